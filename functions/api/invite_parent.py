"""
Invite Parent Endpoint - POST /parents/invite

Emails a parent/guardian a link to buy Pro for the calling student.
Requires bearer authentication. Limited to 3 invites per rolling 24 hours.
"""

import logging

from shared.auth import authenticate_request
from shared.config import get_settings
from shared.constants import INVITE_STATUS_SENT
from shared.errors import APIError, ConfigurationError
from shared.invites import request_parent_invite
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_header, parse_json_body
from shared.response_utils import api_error_response, error_response, success_response
from shared.types import APIGatewayEvent, InviteRequest

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event: APIGatewayEvent, context):
    """
    Lambda handler for POST /parents/invite.

    Request body:
    {
        "parentEmail": "parent@example.com"
    }

    Returns:
    {
        "ok": true
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_header(event, "Origin")

    method = (event.get("httpMethod") or "POST").upper()
    if method == "OPTIONS":
        return success_response(origin=origin)
    if method != "POST":
        return error_response(405, "method_not_allowed", "Method not allowed", origin=origin)

    try:
        settings = get_settings()
        user = authenticate_request(event, settings)
        body: InviteRequest = parse_json_body(event)
        result = request_parent_invite(settings, user, body.get("parentEmail") or "")
    except ConfigurationError as e:
        logger.critical(f"Parent invites not configured: {e.message}")
        return api_error_response(e, origin=origin)
    except APIError as e:
        if e.status_code >= 500:
            logger.error(f"Parent invite failed: {e.message}")
        return api_error_response(e, origin=origin)
    except Exception as e:
        logger.error(f"Unexpected error sending parent invite: {e}", exc_info=True)
        return error_response(500, "internal_error", "Something went wrong. Please try again.", origin=origin)

    if result.status != INVITE_STATUS_SENT:
        return error_response(
            502,
            "email_failed",
            "We couldn't send the invite email. Please try again later.",
            origin=origin,
        )

    return success_response(origin=origin)
