"""
Redeem Code Endpoint - POST /redeem

Redeems a parent claim code for the calling student and grants Pro until
the end of the paid period. Requires bearer authentication.
"""

import logging

from shared.auth import authenticate_request
from shared.config import get_settings
from shared.errors import APIError, ConfigurationError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.redemption import redeem_claim_code
from shared.request_utils import get_header, parse_json_body
from shared.response_utils import api_error_response, error_response, success_response
from shared.types import APIGatewayEvent, RedeemRequest

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event: APIGatewayEvent, context):
    """
    Lambda handler for POST /redeem.

    Request body:
    {
        "code": "AB12-CD34"
    }

    Returns:
    {
        "ok": true,
        "tier": "pro",
        "expiresAt": "2026-11-19T00:00:00Z",
        "source": "parent"
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
        body: RedeemRequest = parse_json_body(event)
        redemption = redeem_claim_code(settings, user, str(body.get("code") or ""))
    except ConfigurationError as e:
        logger.critical(f"Redemption not configured: {e.message}")
        return api_error_response(e, origin=origin)
    except APIError as e:
        if e.status_code >= 500:
            logger.error(f"Redemption failed: {e.message}")
        return api_error_response(e, origin=origin)
    except Exception as e:
        logger.error(f"Unexpected error redeeming code: {e}", exc_info=True)
        return error_response(500, "internal_error", "Something went wrong. Please try again.", origin=origin)

    return success_response(redemption.to_dict(), origin=origin)
