"""
Shared HTTP Client with Connection Pooling.

Provides a reusable httpx.Client for the RevenueCat and SendGrid calls so
warm Lambda invocations reuse TLS connections.

Usage:
    from shared.http_client import get_http_client

    client = get_http_client()
    response = client.get("https://api.example.com/data")

Testing:
    Set USE_CONNECTION_POOLING=false in test fixtures to get a new client
    per call. respx patches the transport either way.
"""

import logging
import os
from typing import Optional

import httpx

from .constants import DEFAULT_TIMEOUT as _DEFAULT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Global client instance (lazy-initialized)
_client: Optional[httpx.Client] = None

DEFAULT_TIMEOUT = httpx.Timeout(
    _DEFAULT_TIMEOUT_SECONDS,  # Total timeout
    connect=5.0,  # Connection timeout
)

DEFAULT_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=5,
    keepalive_expiry=30.0,
)


def _use_connection_pooling() -> bool:
    """Check if connection pooling is enabled (runtime check)."""
    return os.environ.get("USE_CONNECTION_POOLING", "true").lower() == "true"


def get_http_client() -> httpx.Client:
    """
    Get an HTTP client for making requests.

    Returns the shared pooled client in production, or a new client per call
    when USE_CONNECTION_POOLING=false.
    """
    global _client

    if not _use_connection_pooling():
        return httpx.Client(timeout=DEFAULT_TIMEOUT, limits=DEFAULT_LIMITS)

    if _client is None:
        logger.debug("Initializing shared HTTP client with connection pooling")
        _client = httpx.Client(timeout=DEFAULT_TIMEOUT, limits=DEFAULT_LIMITS)

    return _client


def close_http_client() -> None:
    """Close the shared HTTP client."""
    global _client

    if _client is not None:
        _client.close()
        _client = None
        logger.debug("Closed shared HTTP client")
