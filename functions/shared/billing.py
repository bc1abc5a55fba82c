"""Stripe invoice parsing and subscription metadata routing."""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import stripe

from .config import Settings
from .constants import METADATA_PARENT_CLAIM_ID, METADATA_STUDENT_USER_ID
from .logging_utils import log_external_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Invoice:
    id: str
    subscription_id: Optional[str]
    livemode: bool
    customer_id: Optional[str]
    period_end_ms: Optional[int]


@dataclass(frozen=True)
class SubscriptionMetadata:
    subscription_id: str
    student_user_id: Optional[str] = None
    parent_claim_id: Optional[str] = None


def _object_id(value) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id") or None
    return None


def _extract_subscription_id(invoice: dict) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    return _object_id((parent.get("subscription_details") or {}).get("subscription"))


def _extract_period_end_ms(invoice: dict) -> Optional[int]:
    """Period end of the first line item, in epoch milliseconds."""
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    end = (lines[0].get("period") or {}).get("end")
    if isinstance(end, bool) or not isinstance(end, (int, float)) or end <= 0:
        return None
    return int(end) * 1000


def parse_invoice(data: dict) -> Invoice:
    return Invoice(
        id=data.get("id") or "",
        subscription_id=_extract_subscription_id(data),
        livemode=bool(data.get("livemode")),
        customer_id=_object_id(data.get("customer")),
        period_end_ms=_extract_period_end_ms(data),
    )


def resolve_subscription_metadata(invoice: Invoice, settings: Settings) -> Optional[SubscriptionMetadata]:
    """Fetch the invoice's subscription and read its routing tags.

    Returns None (with a warning) for invoices that are not tied to a
    subscription. Raises ConfigurationError when no Stripe key exists for
    the invoice's mode; Stripe API errors propagate so the webhook retries.
    """
    if not invoice.subscription_id:
        logger.warning(f"Invoice {invoice.id} has no subscription, skipping")
        return None

    api_key = settings.stripe_key_for(invoice.livemode)

    start = time.time()
    try:
        subscription = stripe.Subscription.retrieve(invoice.subscription_id, api_key=api_key)
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", "subscriptions.retrieve", False, (time.time() - start) * 1000, str(e))
        raise
    log_external_call(logger, "stripe", "subscriptions.retrieve", True, (time.time() - start) * 1000)

    metadata = subscription.get("metadata") or {}
    student_user_id = (metadata.get(METADATA_STUDENT_USER_ID) or "").strip() or None
    parent_claim_id = (metadata.get(METADATA_PARENT_CLAIM_ID) or "").strip() or None

    if student_user_id and parent_claim_id:
        # Redeemed parent subscriptions carry both; renewals go to the student directly
        logger.info(
            f"Subscription {invoice.subscription_id} has both routing tags, using student_user_id",
            extra={"parent_claim_id": parent_claim_id},
        )
        parent_claim_id = None

    return SubscriptionMetadata(
        subscription_id=invoice.subscription_id,
        student_user_id=student_user_id,
        parent_claim_id=parent_claim_id,
    )


def bind_student_to_subscription(settings: Settings, subscription_id: str, livemode: bool, user_id: str) -> None:
    """Write ``student_user_id`` onto a parent-bought subscription.

    After redemption, renewal invoices then reconcile the student's
    entitlement directly instead of hitting the already-claimed claim.
    """
    api_key = settings.stripe_key_for(livemode)

    start = time.time()
    try:
        stripe.Subscription.modify(subscription_id, metadata={METADATA_STUDENT_USER_ID: user_id}, api_key=api_key)
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", "subscriptions.modify", False, (time.time() - start) * 1000, str(e))
        raise
    log_external_call(logger, "stripe", "subscriptions.modify", True, (time.time() - start) * 1000)
