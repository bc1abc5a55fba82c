"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Grants Pro access on confirmed payment (invoice.paid) only. Requests are
authenticated by Stripe signature rather than a bearer token.
"""

import json
import logging

import stripe
from botocore.exceptions import ClientError

from shared.billing import parse_invoice, resolve_subscription_metadata
from shared.billing_events import (
    CLAIM_DUPLICATE,
    CLAIM_IN_PROGRESS,
    claim_event,
    record_event,
    release_event,
)
from shared.claim_lifecycle import ParentClaimLifecycle
from shared.config import Settings, get_settings
from shared.entitlements import build_reconciler
from shared.errors import ConfigurationError, ExternalServiceError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_header, get_raw_body
from shared.response_utils import error_response, success_response
from shared.signature import verify_signature
from shared.types import StripeEvent

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - invoice.paid: Grant or extend Pro, directly or through a parent claim
    - checkout.session.completed: Acknowledged only (no access before payment)
    - customer.subscription.deleted: Acknowledged only (access lapses at expiry)
    """
    configure_structured_logging()
    set_request_id(event)

    try:
        settings = get_settings()
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e.message}")
        return error_response(500, e.code, e.message)

    if not settings.webhook_secrets:
        logger.critical("Stripe webhook secret not configured")
        return error_response(500, "not_configured", "Stripe not configured")

    payload = get_raw_body(event)
    sig_header = get_header(event, "Stripe-Signature")

    if not sig_header:
        logger.warning("Missing Stripe signature")
        return error_response(400, "missing_signature", "Missing Stripe signature")

    try:
        verify_signature(payload, sig_header, settings.webhook_secrets, settings.webhook_tolerance_seconds)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}")
        return error_response(400, "invalid_signature", "Invalid signature")

    try:
        stripe_event: StripeEvent = json.loads(payload)
        event_type = stripe_event["type"]
        data = stripe_event["data"]["object"]
        event_id = stripe_event["id"]
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Invalid webhook payload: {e}")
        return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

    logger.info(f"Processing Stripe event: {event_type} (id={event_id})")

    try:
        claim = claim_event(settings, stripe_event)
    except ClientError as e:
        logger.error(f"Failed to claim event {event_id}: {e}")
        return error_response(500, "temporary_error", "Temporary error, please retry")

    if claim == CLAIM_DUPLICATE:
        logger.info(f"Skipping duplicate event {event_id}")
        return success_response({"duplicate": True})
    if claim == CLAIM_IN_PROGRESS:
        logger.info(f"Event {event_id} is being processed by another delivery")
        return error_response(409, "event_in_progress", "Event is already being processed")

    try:
        _dispatch_event(event_type, data, settings)
    except ConfigurationError as e:
        release_event(settings, stripe_event, str(e))
        logger.critical(f"Configuration error handling {event_type}: {e.message}")
        return error_response(500, e.code, "Webhook handler is not configured")
    except (ClientError, stripe.StripeError, ExternalServiceError) as e:
        # Dependency failures are retryable: Stripe redelivers on non-2xx
        release_event(settings, stripe_event, str(e))
        logger.error(f"Dependency error handling {event_type}: {e}")
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except Exception as e:
        release_event(settings, stripe_event, str(e))
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        return error_response(500, "processing_failed", "Processing failed")

    record_event(settings, stripe_event, customer_id=_customer_id(data))
    return success_response()


def _customer_id(data: dict):
    customer = data.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def _dispatch_event(event_type: str, data: dict, settings: Settings) -> None:
    if event_type == "invoice.paid":
        _handle_invoice_paid(data, settings)

    elif event_type == "checkout.session.completed":
        # Access is granted on invoice.paid only
        logger.info(f"Checkout session {data.get('id')} completed, waiting for invoice.paid")

    elif event_type == "customer.subscription.deleted":
        # The granted entitlement lapses at its own expiry
        logger.info(f"Subscription {data.get('id')} deleted, entitlement will lapse at expiry")

    else:
        logger.info(f"Unhandled event type: {event_type}")


def _handle_invoice_paid(data: dict, settings: Settings) -> None:
    """
    Route a paid invoice to the student's entitlement or to a parent claim.

    Subscriptions tagged with student_user_id reconcile the student's Pro
    expiry directly. Parent-bought subscriptions (parent_claim_id) mark the
    claim paid and email the student a redemption code.
    """
    invoice = parse_invoice(data)

    if invoice.period_end_ms is None:
        logger.warning(f"Invoice {invoice.id} has no line item period end, skipping")
        return

    metadata = resolve_subscription_metadata(invoice, settings)
    if metadata is None:
        return

    if metadata.student_user_id:
        result = build_reconciler(settings).reconcile(metadata.student_user_id, invoice.period_end_ms)
        logger.info(
            f"Invoice {invoice.id} reconciled for {metadata.student_user_id}",
            extra={"entitlement_action": result.action, "subscription_id": metadata.subscription_id},
        )
        return

    if metadata.parent_claim_id:
        outcome = ParentClaimLifecycle(settings).handle_paid_invoice(
            metadata.parent_claim_id, invoice, invoice.period_end_ms
        )
        logger.info(
            f"Invoice {invoice.id} applied to parent claim {metadata.parent_claim_id}",
            extra={"claim_outcome": outcome, "subscription_id": metadata.subscription_id},
        )
        return

    logger.warning(f"Subscription {metadata.subscription_id} has no student_user_id or parent_claim_id, skipping")
