"""
Shared Type Definitions for Lambda Handlers.

Provides TypedDict definitions for the API Gateway events the handlers
receive and the Stripe payloads they read.
"""

from typing import Any, Optional, TypedDict


class APIGatewayEvent(TypedDict, total=False):
    """API Gateway proxy event structure."""

    httpMethod: str
    headers: dict[str, str]
    queryStringParameters: Optional[dict[str, str]]
    body: Optional[str]
    requestContext: dict[str, Any]
    resource: str
    path: str
    isBase64Encoded: bool


class StripeEventData(TypedDict):
    object: dict[str, Any]


class StripeEvent(TypedDict, total=False):
    """Webhook event envelope (only the fields the handler reads)."""

    id: str
    type: str
    created: int
    livemode: bool
    data: StripeEventData


class InviteRequest(TypedDict, total=False):
    parentEmail: str


class RedeemRequest(TypedDict, total=False):
    code: str

