"""
Tests for redeeming a parent claim code.
"""

from unittest.mock import MagicMock, patch

import pytest

from shared.auth import AuthenticatedUser
from shared.claims import ClaimStore
from shared.entitlements import ACTION_GRANTED, ReconcileResult
from shared.errors import (
    APIError,
    ClaimAlreadyUsedError,
    ClaimNotFoundError,
    ClaimNotPaidError,
    EntitlementStoreError,
    InvalidRequestError,
)
from shared.redemption import redeem_claim_code

STUDENT = AuthenticatedUser(user_id="user_1", email="student@example.com")
OTHER = AuthenticatedUser(user_id="user_2", email="other@example.com")


@pytest.fixture
def reconciler():
    mock = MagicMock()
    mock.reconcile.side_effect = lambda customer_id, expires_at_ms: ReconcileResult(
        ACTION_GRANTED, customer_id, expires_at_ms
    )
    return mock


@pytest.fixture
def stripe_modify():
    with patch("shared.billing.stripe.Subscription.modify") as modify:
        yield modify


class TestRedeemClaimCode:
    def test_redeems_paid_claim(self, settings, paid_claim, reconciler, stripe_modify):
        redemption = redeem_claim_code(settings, STUDENT, "paid-2345", reconciler=reconciler)

        assert redemption.to_dict() == {
            "tier": "pro",
            "expiresAt": "2030-01-01T00:00:00Z",
            "source": "parent",
        }
        reconciler.reconcile.assert_called_once_with("user_1", 1893456000000)
        stripe_modify.assert_called_once_with(
            "sub_parent", metadata={"student_user_id": "user_1"}, api_key="sk_test_test"
        )

        claim = ClaimStore(settings).get("claim_paid")
        assert claim.status == "claimed"
        assert claim.claimed_by == "user_1"

    def test_short_code_is_invalid(self, settings, mock_dynamodb, reconciler):
        with pytest.raises(InvalidRequestError, match="Invalid code"):
            redeem_claim_code(settings, STUDENT, "AB-12", reconciler=reconciler)

    def test_unknown_code(self, settings, paid_claim, reconciler):
        with pytest.raises(ClaimNotFoundError):
            redeem_claim_code(settings, STUDENT, "ZZZZ-9999", reconciler=reconciler)

    def test_unpaid_code(self, settings, pending_claim, reconciler):
        with pytest.raises(ClaimNotPaidError):
            redeem_claim_code(settings, STUDENT, "AB12-CD34", reconciler=reconciler)
        reconciler.reconcile.assert_not_called()

    def test_legacy_created_claim_is_unpaid(self, settings, claims_table, reconciler):
        claims_table.put_item(Item={"pk": "legacy", "claim_code": "LEGACY12", "status": "created"})
        with pytest.raises(ClaimNotPaidError):
            redeem_claim_code(settings, STUDENT, "LEGACY12", reconciler=reconciler)

    def test_code_used_by_someone_else(self, settings, paid_claim, reconciler, stripe_modify):
        redeem_claim_code(settings, STUDENT, "PAID2345", reconciler=reconciler)

        with pytest.raises(ClaimAlreadyUsedError):
            redeem_claim_code(settings, OTHER, "PAID2345", reconciler=reconciler)
        assert reconciler.reconcile.call_count == 1

    def test_same_student_can_resume_after_failure(self, settings, paid_claim, reconciler, stripe_modify):
        reconciler.reconcile.side_effect = [EntitlementStoreError("down", 503), ReconcileResult(ACTION_GRANTED, "user_1", 1)]

        with pytest.raises(EntitlementStoreError):
            redeem_claim_code(settings, STUDENT, "PAID2345", reconciler=reconciler)
        redeem_claim_code(settings, STUDENT, "PAID2345", reconciler=reconciler)

        assert reconciler.reconcile.call_count == 2
        stripe_modify.assert_called_once()

    def test_paid_claim_without_expiry(self, settings, claims_table, reconciler):
        claims_table.put_item(Item={"pk": "broken", "claim_code": "BROKEN12", "status": "paid"})
        with pytest.raises(APIError) as exc_info:
            redeem_claim_code(settings, STUDENT, "BROKEN12", reconciler=reconciler)
        assert exc_info.value.status_code == 500

    def test_claim_without_subscription_skips_binding(self, settings, claims_table, reconciler, stripe_modify):
        claims_table.put_item(
            Item={"pk": "nosub", "claim_code": "NOSUB123", "status": "paid", "paid_expires_at_ms": 1893456000000}
        )
        redeem_claim_code(settings, STUDENT, "NOSUB123", reconciler=reconciler)
        stripe_modify.assert_not_called()
