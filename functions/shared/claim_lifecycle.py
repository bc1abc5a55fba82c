"""
Parent claim lifecycle: pending -> paid -> claimed.

The webhook moves a claim to paid and sends the student their one-time
redemption email. Only the redeem endpoint moves it to claimed.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from .billing import Invoice
from .claim_codes import format_claim_code
from .claims import ClaimStore
from .config import Settings
from .constants import CLAIM_STATUS_CLAIMED
from .errors import EmailDeliveryError, EmailInProgressError
from .logging_utils import mask_email
from .mailer import REDEEM_EMAIL_SUBJECT, build_redeem_email_html, build_redeem_link, send_email

logger = logging.getLogger(__name__)

OUTCOME_CLAIM_MISSING = "claim_missing"
OUTCOME_ALREADY_CLAIMED = "already_claimed"
OUTCOME_EMAIL_ALREADY_SENT = "email_already_sent"
OUTCOME_EMAIL_SENT = "email_sent"


class ParentClaimLifecycle:
    def __init__(
        self,
        settings: Settings,
        store: Optional[ClaimStore] = None,
        sender: Callable[..., None] = send_email,
    ):
        self.settings = settings
        self.store = store or ClaimStore(settings)
        self.sender = sender

    def handle_paid_invoice(
        self,
        claim_id: str,
        invoice: Invoice,
        expires_at_ms: int,
        now: Optional[datetime] = None,
    ) -> str:
        """Record payment on the claim and email the code exactly once.

        Safe to re-run for the same invoice. If sending fails the error is
        recorded on the claim and re-raised so the webhook answers 500 and
        Stripe redelivers; the paid state written before stays in place.
        """
        claim = self.store.mark_paid(
            claim_id,
            subscription_id=invoice.subscription_id,
            invoice_id=invoice.id,
            customer_id=invoice.customer_id,
            livemode=invoice.livemode,
            expires_at_ms=expires_at_ms,
            now=now,
        )

        if claim is None:
            current = self.store.get(claim_id)
            if current is None:
                logger.warning(f"Parent claim {claim_id} not found for invoice {invoice.id}")
                return OUTCOME_CLAIM_MISSING
            if current.status == CLAIM_STATUS_CLAIMED:
                logger.info(f"Parent claim {claim_id} already claimed, ignoring invoice {invoice.id}")
                return OUTCOME_ALREADY_CLAIMED
            logger.info(
                f"Parent claim {claim_id} already paid through a later date, keeping it",
                extra={"stored_expires_at_ms": current.paid_expires_at_ms, "invoice_expires_at_ms": expires_at_ms},
            )
            claim = current

        if claim.redeem_email_sent_at:
            logger.info(f"Redemption email already sent for claim {claim_id}")
            return OUTCOME_EMAIL_ALREADY_SENT

        if not self.store.acquire_email_lease(claim_id, now=now):
            latest = self.store.get(claim_id)
            if latest is not None and latest.redeem_email_sent_at:
                return OUTCOME_EMAIL_ALREADY_SENT
            raise EmailInProgressError(claim_id)

        try:
            self._send_redeem_email(claim)
        except Exception as e:
            self.store.record_email_failure(claim_id, str(e), now=now)
            logger.error(
                f"Redemption email failed for claim {claim_id}",
                extra={"attempts": claim.redeem_email_attempts + 1, "error": str(e)},
            )
            raise

        if not self.store.mark_email_sent(claim_id, now=now):
            logger.warning(f"Redemption email for claim {claim_id} was already marked sent")
        logger.info(f"Redemption email sent for claim {claim_id} to {mask_email(claim.child_email)}")
        return OUTCOME_EMAIL_SENT

    def _send_redeem_email(self, claim) -> None:
        if not claim.child_email:
            raise EmailDeliveryError(f"Parent claim {claim.id} has no child email")

        code = format_claim_code(claim.claim_code)
        html_body = build_redeem_email_html(code, build_redeem_link(self.settings, code))
        self.sender(self.settings, claim.child_email, REDEEM_EMAIL_SUBJECT, html_body)
