"""
Tests for the parent claim lifecycle (payment recording and redemption email).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from shared.billing import Invoice
from shared.claim_lifecycle import (
    OUTCOME_ALREADY_CLAIMED,
    OUTCOME_CLAIM_MISSING,
    OUTCOME_EMAIL_ALREADY_SENT,
    OUTCOME_EMAIL_SENT,
    ParentClaimLifecycle,
)
from shared.claims import ClaimStore
from shared.errors import EmailDeliveryError, EmailInProgressError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
EXPIRES_MS = 2_000_000_000_000
INVOICE = Invoice(id="in_1", subscription_id="sub_1", livemode=False, customer_id="cus_1", period_end_ms=EXPIRES_MS)


@pytest.fixture
def sender():
    return MagicMock()


@pytest.fixture
def lifecycle(settings, mock_dynamodb, sender):
    return ParentClaimLifecycle(settings, sender=sender)


class TestHandlePaidInvoice:
    def test_marks_paid_and_emails_code(self, lifecycle, sender, pending_claim):
        outcome = lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)

        assert outcome == OUTCOME_EMAIL_SENT
        sender.assert_called_once()
        _, to, subject, html_body = sender.call_args.args
        assert to == "student@example.com"
        assert "AB12-CD34" in html_body
        assert "fl4sh://redeem?code=AB12-CD34" in html_body

        claim = lifecycle.store.get("claim_123")
        assert claim.status == "paid"
        assert claim.paid_expires_at_ms == EXPIRES_MS
        assert claim.redeem_email_sent_at

    def test_redelivery_does_not_resend(self, lifecycle, sender, pending_claim):
        lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)
        outcome = lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW + timedelta(minutes=1))

        assert outcome == OUTCOME_EMAIL_ALREADY_SENT
        assert sender.call_count == 1

    def test_send_failure_records_and_reraises(self, lifecycle, sender, pending_claim):
        sender.side_effect = EmailDeliveryError("SendGrid rejected email: 500", 500)

        with pytest.raises(EmailDeliveryError):
            lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)

        claim = lifecycle.store.get("claim_123")
        assert claim.status == "paid"
        assert claim.paid_expires_at_ms == EXPIRES_MS
        assert claim.redeem_email_attempts == 1
        assert "500" in claim.redeem_email_last_error
        assert claim.redeem_email_sent_at is None

    def test_retry_after_failure_sends_once(self, lifecycle, sender, pending_claim):
        sender.side_effect = [EmailDeliveryError("boom"), None]

        with pytest.raises(EmailDeliveryError):
            lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)
        outcome = lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)

        assert outcome == OUTCOME_EMAIL_SENT
        assert sender.call_count == 2
        assert lifecycle.store.get("claim_123").redeem_email_last_error is None

    def test_claimed_claim_is_left_alone(self, lifecycle, sender, claims_table):
        claims_table.put_item(
            Item={"pk": "claim_123", "claim_code": "AB12CD34", "status": "claimed", "claimed_by": "user_1"}
        )

        outcome = lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)

        assert outcome == OUTCOME_ALREADY_CLAIMED
        sender.assert_not_called()
        assert lifecycle.store.get("claim_123").status == "claimed"

    def test_missing_claim_is_a_noop(self, lifecycle, sender, claims_table):
        assert lifecycle.handle_paid_invoice("ghost", INVOICE, EXPIRES_MS, now=NOW) == OUTCOME_CLAIM_MISSING
        sender.assert_not_called()

    def test_stale_invoice_keeps_later_expiry(self, lifecycle, sender, pending_claim):
        lifecycle.store.mark_paid(
            "claim_123",
            subscription_id="sub_1",
            invoice_id="in_2",
            customer_id="cus_1",
            livemode=False,
            expires_at_ms=EXPIRES_MS + 1000,
            now=NOW,
        )

        outcome = lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)

        assert outcome == OUTCOME_EMAIL_SENT
        assert lifecycle.store.get("claim_123").paid_expires_at_ms == EXPIRES_MS + 1000

    def test_concurrent_delivery_holding_lease(self, lifecycle, sender, pending_claim):
        ClaimStore(lifecycle.settings).acquire_email_lease("claim_123", now=NOW)

        with pytest.raises(EmailInProgressError):
            lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)
        sender.assert_not_called()

    def test_missing_child_email_is_recorded(self, lifecycle, sender, claims_table):
        claims_table.put_item(Item={"pk": "claim_123", "claim_code": "AB12CD34", "status": "pending"})

        with pytest.raises(EmailDeliveryError):
            lifecycle.handle_paid_invoice("claim_123", INVOICE, EXPIRES_MS, now=NOW)

        assert lifecycle.store.get("claim_123").redeem_email_attempts == 1
        sender.assert_not_called()
