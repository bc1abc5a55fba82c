"""
Entitlement reconciliation against RevenueCat.

RevenueCat's v2 API only exposes grant and revoke for promotional
entitlements, and granting while a grant is active does not move its
expiry. Extending therefore means revoke-then-grant. The reconciler always
re-reads the active entitlements before acting, so a crash between the two
calls is resumed on the next delivery: the retry sees no active grant and
grants directly, reaching the same end state.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from .config import Settings
from .errors import EntitlementStoreError
from .http_client import get_http_client
from .logging_utils import log_external_call

logger = logging.getLogger(__name__)

ACTION_NOOP = "noop"
ACTION_GRANTED = "granted"
ACTION_EXTENDED = "extended"


@dataclass(frozen=True)
class EntitlementRecord:
    entitlement_id: str
    expires_at_ms: Optional[int]  # None means the grant never expires


@dataclass(frozen=True)
class ReconcileResult:
    action: str
    customer_id: str
    expires_at_ms: int
    previous_expires_at_ms: Optional[int] = None


def _parse_expiry(item: dict) -> Optional[int]:
    # Older payloads spell it expire_at
    for key in ("expires_at", "expire_at"):
        value = item.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


class RevenueCatClient:
    """Thin client for the RevenueCat v2 customer entitlement endpoints."""

    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        self.api_base = settings.revenuecat_api_base.rstrip("/")
        self.project_id = settings.revenuecat_project_id
        self.entitlement_id = settings.revenuecat_entitlement_id
        self._api_key = settings.revenuecat_api_key
        self._http = http

    def _customer_url(self, customer_id: str, suffix: str) -> str:
        return (
            f"{self.api_base}/projects/{quote(self.project_id, safe='')}"
            f"/customers/{quote(customer_id, safe='')}/{suffix}"
        )

    def _request(self, method: str, url: str, operation: str, body: Optional[dict] = None) -> dict:
        http = self._http or get_http_client()
        start = time.time()
        try:
            response = http.request(
                method,
                url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as e:
            log_external_call(logger, "revenuecat", operation, False, (time.time() - start) * 1000, str(e))
            raise EntitlementStoreError(f"RevenueCat {operation} failed") from e

        latency_ms = (time.time() - start) * 1000
        if response.status_code >= 400:
            error = f"{response.status_code} {response.text[:500]}"
            log_external_call(logger, "revenuecat", operation, False, latency_ms, error)
            raise EntitlementStoreError(f"RevenueCat {operation} failed", response.status_code)

        log_external_call(logger, "revenuecat", operation, True, latency_ms)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def get_active_entitlement(self, customer_id: str) -> Optional[EntitlementRecord]:
        """Return the configured entitlement if it is active for the customer."""
        data = self._request("GET", self._customer_url(customer_id, "active_entitlements"), "get_active_entitlements")

        items = data.get("items")
        if items is None:
            items = (data.get("active_entitlements") or {}).get("items", [])
        if not isinstance(items, list):
            return None

        for item in items:
            if isinstance(item, dict) and item.get("entitlement_id") == self.entitlement_id:
                return EntitlementRecord(self.entitlement_id, _parse_expiry(item))
        return None

    def grant(self, customer_id: str, expires_at_ms: int) -> None:
        self._request(
            "POST",
            self._customer_url(customer_id, "actions/grant_entitlement"),
            "grant_entitlement",
            {"entitlement_id": self.entitlement_id, "expires_at": expires_at_ms},
        )

    def revoke(self, customer_id: str) -> None:
        self._request(
            "POST",
            self._customer_url(customer_id, "actions/revoke_granted_entitlement"),
            "revoke_granted_entitlement",
            {"entitlement_id": self.entitlement_id},
        )


class EntitlementReconciler:
    """Moves a customer's Pro expiry forward, never backward."""

    def __init__(self, store: RevenueCatClient):
        self.store = store

    def reconcile(self, customer_id: str, expires_at_ms: int) -> ReconcileResult:
        current = self.store.get_active_entitlement(customer_id)

        if current is not None:
            if current.expires_at_ms is None or current.expires_at_ms >= expires_at_ms:
                logger.info(
                    f"Entitlement already satisfied for {customer_id}",
                    extra={"current_expires_at_ms": current.expires_at_ms, "target_expires_at_ms": expires_at_ms},
                )
                return ReconcileResult(ACTION_NOOP, customer_id, expires_at_ms, current.expires_at_ms)

            # Revoke and grant are one logical extend; a failure between them
            # is resumed by the next delivery via the grant-only branch.
            self.store.revoke(customer_id)
            self.store.grant(customer_id, expires_at_ms)
            logger.info(
                f"Extended entitlement for {customer_id}",
                extra={"previous_expires_at_ms": current.expires_at_ms, "expires_at_ms": expires_at_ms},
            )
            return ReconcileResult(ACTION_EXTENDED, customer_id, expires_at_ms, current.expires_at_ms)

        self.store.grant(customer_id, expires_at_ms)
        logger.info(f"Granted entitlement to {customer_id}", extra={"expires_at_ms": expires_at_ms})
        return ReconcileResult(ACTION_GRANTED, customer_id, expires_at_ms)


def build_reconciler(settings: Settings, http: Optional[httpx.Client] = None) -> EntitlementReconciler:
    """Create a reconciler, failing loudly if RevenueCat is not configured."""
    settings.require_revenuecat()
    return EntitlementReconciler(RevenueCatClient(settings, http=http))
