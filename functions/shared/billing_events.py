"""
Stripe webhook event ledger.

Each event id is claimed with a conditional write before processing. A
claim is a lease: if the holder crashes, the event becomes claimable again
once ``lease_expires_at`` passes. Events that finished successfully are
never reprocessed.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .config import Settings
from .constants import BILLING_EVENT_TTL_DAYS, EVENT_LEASE_SECONDS, MAX_ERROR_LENGTH

logger = logging.getLogger(__name__)

EVENT_STATUS_PROCESSING = "processing"
EVENT_STATUS_SUCCESS = "success"
EVENT_STATUS_FAILED = "failed"

CLAIM_CLAIMED = "claimed"
CLAIM_DUPLICATE = "duplicate"
CLAIM_IN_PROGRESS = "in_progress"


def _table(settings: Settings, table=None):
    return table or get_dynamodb().Table(settings.billing_events_table)


def _key(event: dict) -> dict:
    return {"pk": event["id"], "sk": event.get("type") or "unknown"}


def _ttl() -> int:
    return int((datetime.now(timezone.utc) + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp())


def claim_event(settings: Settings, event: dict, now: Optional[float] = None, table=None) -> str:
    """Atomically claim a webhook event for processing.

    Returns:
        CLAIM_CLAIMED if this invocation should process the event,
        CLAIM_DUPLICATE if it already succeeded,
        CLAIM_IN_PROGRESS if another invocation holds a live lease.
    """
    table = _table(settings, table)
    now_ts = int(now if now is not None else time.time())
    try:
        table.put_item(
            Item={
                **_key(event),
                "status": EVENT_STATUS_PROCESSING,
                "lease_expires_at": now_ts + EVENT_LEASE_SECONDS,
                "processed_at": datetime.now(timezone.utc).isoformat(),
                "event_created_at": event.get("created"),
                "livemode": bool(event.get("livemode")),
                "ttl": _ttl(),
            },
            ConditionExpression=(
                "attribute_not_exists(pk) OR (#status <> :success AND "
                "(attribute_not_exists(lease_expires_at) OR lease_expires_at < :now))"
            ),
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues={":success": EVENT_STATUS_SUCCESS, ":now": now_ts},
        )
        return CLAIM_CLAIMED
    except ClientError as e:
        if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
            raise

    existing = table.get_item(Key=_key(event), ConsistentRead=True).get("Item") or {}
    if existing.get("status") == EVENT_STATUS_SUCCESS:
        return CLAIM_DUPLICATE
    return CLAIM_IN_PROGRESS


def release_event(settings: Settings, event: dict, error: str, table=None) -> None:
    """Mark a claimed event failed and drop its lease so Stripe's retry can reclaim it.

    Best-effort: a failure here only delays the retry until the lease
    expires, so it is logged rather than raised.
    """
    try:
        _table(settings, table).update_item(
            Key=_key(event),
            UpdateExpression="SET #status = :failed, #error = :error, lease_expires_at = :zero, processed_at = :now",
            ExpressionAttributeNames={"#status": "status", "#error": "error"},
            ExpressionAttributeValues={
                ":failed": EVENT_STATUS_FAILED,
                ":error": str(error)[:MAX_ERROR_LENGTH],
                ":zero": 0,
                ":now": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info(f"Released event claim for {event.get('id')} to allow retry")
    except ClientError as e:
        logger.error(f"Failed to release event claim {event.get('id')}: {e}")


def record_event(settings: Settings, event: dict, customer_id: Optional[str] = None, table=None) -> None:
    """Mark an event processed successfully (audit trail, best-effort)."""
    try:
        _table(settings, table).put_item(
            Item={
                **_key(event),
                "status": EVENT_STATUS_SUCCESS,
                "customer_id": customer_id or "unknown",
                "processed_at": datetime.now(timezone.utc).isoformat(),
                "event_created_at": event.get("created"),
                "livemode": bool(event.get("livemode")),
                "ttl": _ttl(),
            }
        )
    except ClientError as e:
        # A lost success row lets a later redelivery reprocess; every step is idempotent
        logger.error(f"Failed to record billing event {event.get('id')}: {e}")
