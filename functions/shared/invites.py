"""
Parent invites with a rolling 24-hour quota per student.

Invites live in their own table keyed by student (pk) and
``<created_at>#<invite id>`` (sk), so the quota check is a single key
range query. ``created_at`` uses a fixed-width UTC format so the sort key
compares lexicographically.

Each student also has a quota row (``<user id>#quota``) whose ``version``
is bumped in the same transaction that inserts an invite. A request that
counted the window under an older version loses the transaction and
recounts, so concurrent requests cannot overshoot the quota.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from .auth import AuthenticatedUser
from .aws_clients import get_dynamodb
from .config import Settings
from .constants import (
    INVITE_STATUS_FAILED,
    INVITE_STATUS_SENDING,
    INVITE_STATUS_SENT,
    INVITE_WINDOW_HOURS,
    MAX_ERROR_LENGTH,
)
from .errors import (
    EmailDeliveryError,
    InvalidRequestError,
    InviteConflictError,
    RateLimitExceededError,
)
from .logging_utils import mask_email
from .mailer import PARENT_INVITE_SUBJECT, build_parent_invite_html, send_email

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

INVITE_RECORD_TTL_DAYS = 30

# Concurrent requests for one student retry the quota check this many times
INVITE_RESERVE_ATTEMPTS = 3
QUOTA_SORT_KEY = "INVITE_QUOTA"


@dataclass(frozen=True)
class InviteResult:
    invite_id: str
    status: str
    error: Optional[str] = None


def normalize_email(email) -> str:
    return str(email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(EMAIL_REGEX.match(email))


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def recent_invite_times(table, user_id: str, since: datetime) -> list[datetime]:
    """Creation times of the student's invites at or after ``since``, oldest first."""
    kwargs = {
        "KeyConditionExpression": Key("pk").eq(user_id) & Key("sk").gte(format_timestamp(since)),
        "ProjectionExpression": "created_at",
        "ConsistentRead": True,
    }
    times = []
    while True:
        response = table.query(**kwargs)
        times.extend(parse_timestamp(item["created_at"]) for item in response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return times
        kwargs["ExclusiveStartKey"] = last_key


def _quota_key(user_id: str) -> dict:
    return {"pk": f"{user_id}#quota", "sk": QUOTA_SORT_KEY}


def quota_version(table, user_id: str) -> int:
    """Current version of the student's quota row, 0 when it does not exist yet."""
    item = table.get_item(Key=_quota_key(user_id), ConsistentRead=True).get("Item")
    return int(item["version"]) if item else 0


def _reserve_invite(table, user_id: str, seen_version: int, item: dict, ttl: int) -> bool:
    """Insert ``item`` only if no other invite was recorded since ``seen_version``.

    Returns False when a concurrent request won the race.
    """
    if seen_version:
        condition = "#version = :seen"
        values = {":seen": seen_version, ":next": seen_version + 1, ":ttl": ttl}
    else:
        condition = "attribute_not_exists(#version)"
        values = {":next": 1, ":ttl": ttl}

    try:
        table.meta.client.transact_write_items(
            TransactItems=[
                {
                    # Bump the quota version; fails if another invite landed first
                    "Update": {
                        "TableName": table.name,
                        "Key": _quota_key(user_id),
                        "UpdateExpression": "SET #version = :next, #ttl = :ttl",
                        "ConditionExpression": condition,
                        "ExpressionAttributeNames": {"#version": "version", "#ttl": "ttl"},
                        "ExpressionAttributeValues": values,
                    }
                },
                {
                    "Put": {
                        "TableName": table.name,
                        "Item": item,
                        "ConditionExpression": "attribute_not_exists(pk)",
                    }
                },
            ]
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "TransactionCanceledException":
            return False
        raise
    return True


def request_parent_invite(
    settings: Settings,
    user: AuthenticatedUser,
    parent_email: str,
    now: Optional[datetime] = None,
    table=None,
    sender: Callable[..., None] = send_email,
) -> InviteResult:
    """Record and send one parent invite for ``user``.

    Raises:
        InvalidRequestError: bad parent email or the student has no email
        RateLimitExceededError: the student already sent the daily quota
        InviteConflictError: concurrent requests kept winning the quota row
    """
    parent = normalize_email(parent_email)
    if not is_valid_email(parent):
        raise InvalidRequestError("Please enter a valid parent/guardian email.")
    if not user.email:
        raise InvalidRequestError("Missing child email.")

    table = table or get_dynamodb().Table(settings.parent_invites_table)
    current = now or datetime.now(timezone.utc)
    window = timedelta(hours=INVITE_WINDOW_HOURS)

    invite_id = uuid.uuid4().hex
    created_at = format_timestamp(current)
    key = {"pk": user.user_id, "sk": f"{created_at}#{invite_id}"}
    ttl = int((current + timedelta(days=INVITE_RECORD_TTL_DAYS)).timestamp())
    item = {
        **key,
        "id": invite_id,
        "user_id": user.user_id,
        "child_email": user.email,
        "parent_email": parent,
        "status": INVITE_STATUS_SENDING,
        "created_at": created_at,
        "ttl": ttl,
    }

    for attempt in range(INVITE_RESERVE_ATTEMPTS):
        # Read the version before counting so any insert after the count is caught
        seen_version = quota_version(table, user.user_id)
        recent = recent_invite_times(table, user.user_id, current - window)
        if len(recent) >= settings.invite_daily_limit:
            retry_after = max(1, int((recent[0] + window - current).total_seconds()))
            logger.info(
                f"Invite quota reached for {user.user_id}",
                extra={"recent_invites": len(recent), "retry_after_seconds": retry_after},
            )
            raise RateLimitExceededError(settings.invite_daily_limit, retry_after)

        if _reserve_invite(table, user.user_id, seen_version, item, ttl):
            break
        logger.info(f"Concurrent invite for {user.user_id}, recounting (attempt {attempt + 1})")
    else:
        raise InviteConflictError()

    try:
        sender(
            settings,
            parent,
            PARENT_INVITE_SUBJECT,
            build_parent_invite_html(settings, user.email, user.username),
            from_email=settings.parents_from_email,
        )
    except Exception as e:
        error = str(e)[:MAX_ERROR_LENGTH]
        table.update_item(
            Key=key,
            UpdateExpression="SET #status = :failed, #error = :error",
            ExpressionAttributeNames={"#status": "status", "#error": "error"},
            ExpressionAttributeValues={":failed": INVITE_STATUS_FAILED, ":error": error},
        )
        logger.warning(f"Parent invite {invite_id} to {mask_email(parent)} failed: {error}")
        if not isinstance(e, EmailDeliveryError):
            raise
        return InviteResult(invite_id, INVITE_STATUS_FAILED, error)

    table.update_item(
        Key=key,
        UpdateExpression="SET #status = :sent, sent_at = :now REMOVE #error",
        ExpressionAttributeNames={"#status": "status", "#error": "error"},
        ExpressionAttributeValues={":sent": INVITE_STATUS_SENT, ":now": format_timestamp(datetime.now(timezone.utc))},
    )
    logger.info(f"Parent invite {invite_id} sent to {mask_email(parent)}")
    return InviteResult(invite_id, INVITE_STATUS_SENT)
