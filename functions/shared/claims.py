"""
Parent claim storage (DynamoDB).

Every state transition is a conditional UpdateItem so concurrent webhook
deliveries and redemptions cannot regress a claim:

- paid:    only if the claim exists, is not claimed, and the new expiry
           is not earlier than the stored one
- claimed: only from paid (or a retry by the same student)
- email:   a short lease, then redeem_email_sent_at set exactly once
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .config import Settings
from .constants import (
    CLAIM_STATUS_CLAIMED,
    CLAIM_STATUS_PAID,
    CLAIM_STATUS_PENDING,
    EMAIL_LEASE_SECONDS,
    LEGACY_CLAIM_STATUSES,
    MAX_ERROR_LENGTH,
)

logger = logging.getLogger(__name__)

CLAIM_CODE_INDEX = "claim-code-index"


def _to_int(value) -> Optional[int]:
    # DynamoDB numbers come back as Decimal
    return None if value is None else int(value)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _is_conditional_failure(e: ClientError) -> bool:
    return e.response["Error"]["Code"] == "ConditionalCheckFailedException"


@dataclass
class ParentClaim:
    id: str
    child_email: str
    claim_code: str
    status: str
    stripe_subscription_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    livemode: bool = False
    paid_expires_at_ms: Optional[int] = None
    paid_at: Optional[str] = None
    redeem_email_sent_at: Optional[str] = None
    redeem_email_attempts: int = 0
    redeem_email_last_error: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[str] = None

    @classmethod
    def from_item(cls, item: dict) -> "ParentClaim":
        status = item.get("status") or CLAIM_STATUS_PENDING
        return cls(
            id=item["pk"],
            child_email=item.get("child_email", ""),
            claim_code=item.get("claim_code", ""),
            status=LEGACY_CLAIM_STATUSES.get(status, status),
            stripe_subscription_id=item.get("stripe_subscription_id"),
            stripe_invoice_id=item.get("stripe_invoice_id"),
            stripe_customer_id=item.get("stripe_customer_id"),
            livemode=bool(item.get("livemode", False)),
            paid_expires_at_ms=_to_int(item.get("paid_expires_at_ms")),
            paid_at=item.get("paid_at"),
            redeem_email_sent_at=item.get("redeem_email_sent_at"),
            redeem_email_attempts=_to_int(item.get("redeem_email_attempts")) or 0,
            redeem_email_last_error=item.get("redeem_email_last_error"),
            claimed_by=item.get("claimed_by"),
            claimed_at=item.get("claimed_at"),
        )


class ClaimStore:
    def __init__(self, settings: Settings, table=None):
        self.table = table or get_dynamodb().Table(settings.parent_claims_table)

    def get(self, claim_id: str) -> Optional[ParentClaim]:
        response = self.table.get_item(Key={"pk": claim_id}, ConsistentRead=True)
        item = response.get("Item")
        return ParentClaim.from_item(item) if item else None

    def find_by_code(self, normalized_code: str) -> Optional[ParentClaim]:
        response = self.table.query(
            IndexName=CLAIM_CODE_INDEX,
            KeyConditionExpression=Key("claim_code").eq(normalized_code),
            Limit=1,
        )
        items = response.get("Items", [])
        if not items:
            return None
        # GSIs are eventually consistent; re-read the base item
        return self.get(items[0]["pk"])

    def mark_paid(
        self,
        claim_id: str,
        *,
        subscription_id: Optional[str],
        invoice_id: str,
        customer_id: Optional[str],
        livemode: bool,
        expires_at_ms: int,
        now: Optional[datetime] = None,
    ) -> Optional[ParentClaim]:
        """Compare-and-set the claim to paid.

        Returns the updated claim, or None when the condition failed (claim
        absent, already claimed, or already paid through a later date).
        """
        now_iso = _iso(now or datetime.now(timezone.utc))
        try:
            response = self.table.update_item(
                Key={"pk": claim_id},
                UpdateExpression=(
                    "SET #status = :paid, stripe_subscription_id = :sub, stripe_invoice_id = :inv, "
                    "stripe_customer_id = :cus, livemode = :live, paid_expires_at_ms = :exp, "
                    "paid_at = if_not_exists(paid_at, :now), updated_at = :now"
                ),
                ConditionExpression=(
                    "attribute_exists(pk) AND #status <> :claimed AND "
                    "(attribute_not_exists(paid_expires_at_ms) OR paid_expires_at_ms <= :exp)"
                ),
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":paid": CLAIM_STATUS_PAID,
                    ":claimed": CLAIM_STATUS_CLAIMED,
                    ":sub": subscription_id,
                    ":inv": invoice_id,
                    ":cus": customer_id,
                    ":live": livemode,
                    ":exp": expires_at_ms,
                    ":now": now_iso,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return None
            raise
        return ParentClaim.from_item(response["Attributes"])

    def acquire_email_lease(self, claim_id: str, now: Optional[datetime] = None) -> bool:
        """Take the right to send the redemption email for a short window.

        Fails when the email was already sent or another delivery holds an
        unexpired lease.
        """
        current = now or datetime.now(timezone.utc)
        now_ts = int(current.timestamp())
        try:
            self.table.update_item(
                Key={"pk": claim_id},
                UpdateExpression="SET redeem_email_lock_until = :until",
                ConditionExpression=(
                    "attribute_exists(pk) AND attribute_not_exists(redeem_email_sent_at) AND "
                    "(attribute_not_exists(redeem_email_lock_until) OR redeem_email_lock_until < :now)"
                ),
                ExpressionAttributeValues={
                    ":until": now_ts + EMAIL_LEASE_SECONDS,
                    ":now": now_ts,
                },
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    def mark_email_sent(self, claim_id: str, now: Optional[datetime] = None) -> bool:
        """Set redeem_email_sent_at once. Returns False if it was already set."""
        try:
            self.table.update_item(
                Key={"pk": claim_id},
                UpdateExpression=(
                    "SET redeem_email_sent_at = :now "
                    "REMOVE redeem_email_last_error, redeem_email_lock_until"
                ),
                ConditionExpression="attribute_not_exists(redeem_email_sent_at)",
                ExpressionAttributeValues={":now": _iso(now or datetime.now(timezone.utc))},
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    def record_email_failure(self, claim_id: str, error: str, now: Optional[datetime] = None) -> None:
        self.table.update_item(
            Key={"pk": claim_id},
            UpdateExpression=(
                "SET redeem_email_last_error = :err, redeem_email_last_attempt_at = :now "
                "ADD redeem_email_attempts :one "
                "REMOVE redeem_email_lock_until"
            ),
            ExpressionAttributeValues={
                ":err": error[:MAX_ERROR_LENGTH],
                ":now": _iso(now or datetime.now(timezone.utc)),
                ":one": 1,
            },
        )

    def mark_claimed(self, claim_id: str, user_id: str, now: Optional[datetime] = None) -> Optional[ParentClaim]:
        """Compare-and-set the claim to claimed by ``user_id``.

        Succeeds from paid, or when the same student (or nobody, for claims
        whose claimer was deleted) already holds it, so an interrupted
        redemption can be retried. Returns None when someone else won.
        """
        try:
            response = self.table.update_item(
                Key={"pk": claim_id},
                UpdateExpression=(
                    "SET #status = :claimed, claimed_by = :user, "
                    "claimed_at = if_not_exists(claimed_at, :now), updated_at = :now"
                ),
                ConditionExpression=(
                    "attribute_exists(pk) AND (#status = :paid OR (#status = :claimed AND "
                    "(attribute_not_exists(claimed_by) OR claimed_by = :user)))"
                ),
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":claimed": CLAIM_STATUS_CLAIMED,
                    ":paid": CLAIM_STATUS_PAID,
                    ":user": user_id,
                    ":now": _iso(now or datetime.now(timezone.utc)),
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return None
            raise
        return ParentClaim.from_item(response["Attributes"])
