"""Shared request utilities for API handlers."""

import base64
import json
import logging
from typing import Optional

from .errors import InvalidRequestError

logger = logging.getLogger(__name__)


def get_header(event: dict, name: str) -> Optional[str]:
    """Case-insensitive header lookup (API Gateway preserves client casing)."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def get_raw_body(event: dict) -> bytes:
    """Return the request body exactly as received.

    Signature verification must run over these bytes, never over a
    re-serialized JSON document.
    """
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body)
    return body.encode("utf-8") if isinstance(body, str) else body


def parse_json_body(event: dict) -> dict:
    """Parse a JSON object body or raise ``InvalidRequestError``."""
    try:
        body = json.loads(get_raw_body(event) or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body
