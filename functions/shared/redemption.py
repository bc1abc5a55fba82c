"""
Student-side redemption of a parent claim code.

The claim moves paid -> claimed before the entitlement is granted, so two
students racing on one code cannot both get Pro. A retry by the student who
already holds the claim is allowed and resumes the grant.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .auth import AuthenticatedUser
from .billing import bind_student_to_subscription
from .claim_codes import is_well_formed, normalize_claim_code
from .claims import ClaimStore
from .config import Settings
from .constants import CLAIM_STATUS_CLAIMED, CLAIM_STATUS_PAID, PRO_TIER
from .entitlements import EntitlementReconciler, build_reconciler
from .errors import (
    APIError,
    ClaimAlreadyUsedError,
    ClaimNotFoundError,
    ClaimNotPaidError,
    InvalidRequestError,
)

logger = logging.getLogger(__name__)

SOURCE_PARENT = "parent"


@dataclass(frozen=True)
class Redemption:
    claim_id: str
    tier: str
    expires_at_ms: int
    source: str = SOURCE_PARENT

    @property
    def expires_at(self) -> str:
        return datetime.fromtimestamp(self.expires_at_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")

    def to_dict(self) -> dict:
        return {"tier": self.tier, "expiresAt": self.expires_at, "source": self.source}


def redeem_claim_code(
    settings: Settings,
    user: AuthenticatedUser,
    raw_code: str,
    store: Optional[ClaimStore] = None,
    reconciler: Optional[EntitlementReconciler] = None,
) -> Redemption:
    """Redeem ``raw_code`` for ``user`` and grant Pro until the paid expiry.

    Raises:
        InvalidRequestError: malformed code
        ClaimNotFoundError: no claim carries this code
        ClaimNotPaidError: the parent's payment has not landed
        ClaimAlreadyUsedError: another student redeemed it first
    """
    if not is_well_formed(raw_code):
        raise InvalidRequestError("Invalid code.")
    code = normalize_claim_code(raw_code)

    store = store or ClaimStore(settings)
    claim = store.find_by_code(code)
    if claim is None:
        raise ClaimNotFoundError()

    if claim.status == CLAIM_STATUS_CLAIMED and claim.claimed_by and claim.claimed_by != user.user_id:
        raise ClaimAlreadyUsedError()
    if claim.status not in (CLAIM_STATUS_PAID, CLAIM_STATUS_CLAIMED):
        raise ClaimNotPaidError()
    if not claim.paid_expires_at_ms:
        logger.error(f"Parent claim {claim.id} is {claim.status} without paid_expires_at_ms")
        raise APIError("claim_incomplete", "This code is missing its subscription details.", status_code=500)

    reconciler = reconciler or build_reconciler(settings)

    claimed = store.mark_claimed(claim.id, user.user_id)
    if claimed is None:
        raise ClaimAlreadyUsedError()

    result = reconciler.reconcile(user.user_id, claimed.paid_expires_at_ms)

    if claimed.stripe_subscription_id:
        bind_student_to_subscription(settings, claimed.stripe_subscription_id, claimed.livemode, user.user_id)

    logger.info(
        f"Parent claim {claim.id} redeemed by {user.user_id}",
        extra={"entitlement_action": result.action, "expires_at_ms": claimed.paid_expires_at_ms},
    )
    return Redemption(claim.id, PRO_TIER, claimed.paid_expires_at_ms)
