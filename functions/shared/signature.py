"""
Stripe webhook signature verification.

Header format: ``t=<unix seconds>,v1=<hex>[,v1=<hex>...]``. Matching is
delegated to the Stripe SDK once per configured secret because the live
and test webhook endpoints point at the same function.
"""

import time
from typing import Iterable

import stripe

from .constants import DEFAULT_WEBHOOK_TOLERANCE_SECONDS


def signature_timestamp(sig_header: str) -> int:
    """Return the ``t=`` value of a Stripe-Signature header.

    Raises:
        stripe.SignatureVerificationError: header missing or timestamp absent
            or not an integer.
    """
    if not sig_header:
        raise stripe.SignatureVerificationError("Missing Stripe-Signature header", sig_header)

    for item in sig_header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep and key == "t":
            try:
                return int(value)
            except ValueError:
                raise stripe.SignatureVerificationError("Malformed timestamp in signature header", sig_header)

    raise stripe.SignatureVerificationError("No timestamp in signature header", sig_header)


def verify_signature(
    payload: bytes,
    sig_header: str,
    secrets: Iterable[str],
    tolerance: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
) -> int:
    """Verify that ``payload`` was signed by Stripe with one of ``secrets``.

    Args:
        payload: Raw request body bytes (unparsed)
        sig_header: Value of the Stripe-Signature header
        secrets: Candidate webhook signing secrets
        tolerance: Maximum allowed |now - t| in seconds

    Returns:
        The verified signature timestamp.

    Raises:
        stripe.SignatureVerificationError: on any verification failure.
    """
    timestamp = signature_timestamp(sig_header)

    candidates = [s for s in secrets if s]
    if not candidates:
        raise stripe.SignatureVerificationError("No webhook secrets configured", sig_header)

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise stripe.SignatureVerificationError("Payload is not valid UTF-8", sig_header)

    error = None
    for secret in candidates:
        try:
            stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance)
        except stripe.SignatureVerificationError as e:
            error = e
            continue

        # The SDK only rejects timestamps in the past
        if timestamp > time.time() + tolerance:
            raise stripe.SignatureVerificationError("Timestamp outside the tolerance zone", sig_header, http_body=body)
        return timestamp

    raise error
