"""
Runtime configuration.

Settings are read once per TTL window from the environment (and from
Secrets Manager for any variable that has a matching ``<NAME>_ARN``) and
passed explicitly to every component. Only Lambda handlers call
``get_settings()``; everything below them takes a ``Settings`` argument so
tests can build one directly.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from botocore.exceptions import ClientError

from .aws_clients import get_secretsmanager
from .constants import (
    DEFAULT_INVITE_DAILY_LIMIT,
    DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
    REVENUECAT_API,
    SENDGRID_API,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SETTINGS_CACHE_TTL = 300  # 5 minutes

_settings_cache: Optional["Settings"] = None
_settings_cache_time = 0.0


@dataclass(frozen=True)
class Settings:
    # Stripe
    stripe_secret_key_live: str = ""
    stripe_secret_key_test: str = ""
    webhook_secrets: tuple[str, ...] = ()
    webhook_tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS

    # RevenueCat
    revenuecat_api_key: str = ""
    revenuecat_project_id: str = ""
    revenuecat_entitlement_id: str = ""
    revenuecat_api_base: str = REVENUECAT_API

    # SendGrid
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "support@fl4shcards.com"
    sendgrid_parents_from_email: str = ""
    sendgrid_from_name: str = "FL4SH"
    sendgrid_api_base: str = SENDGRID_API

    # Links
    app_redeem_url: str = "fl4sh://redeem"
    marketing_base_url: str = "https://www.fl4shcards.com"

    # Auth
    auth_jwt_secret: str = ""
    auth_jwt_audience: str = "authenticated"

    # Storage
    parent_claims_table: str = "fl4sh-parent-claims"
    parent_invites_table: str = "fl4sh-parent-invites"
    billing_events_table: str = "fl4sh-billing-events"

    invite_daily_limit: int = DEFAULT_INVITE_DAILY_LIMIT

    # Secrets whose Secrets Manager lookup failed; such settings are never cached
    unresolved_secrets: tuple[str, ...] = ()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables and Secrets Manager."""
        env = os.environ if environ is None else environ
        unresolved: list[str] = []

        webhook_secrets = tuple(
            s
            for s in (
                _read_secret(env, "STRIPE_WEBHOOK_SECRET", unresolved),
                _read_secret(env, "STRIPE_WEBHOOK_SECRET_TEST", unresolved),
            )
            if s
        )

        return cls(
            stripe_secret_key_live=_read_secret(env, "STRIPE_SECRET_KEY", unresolved),
            stripe_secret_key_test=_read_secret(env, "STRIPE_SECRET_KEY_TEST", unresolved),
            webhook_secrets=webhook_secrets,
            webhook_tolerance_seconds=_read_int(env, "STRIPE_WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE_SECONDS),
            revenuecat_api_key=_read_secret(env, "REVENUECAT_SECRET_API_KEY", unresolved),
            revenuecat_project_id=(env.get("REVENUECAT_PROJECT_ID") or "").strip(),
            revenuecat_entitlement_id=(env.get("REVENUECAT_PRO_ENTITLEMENT_ID") or "").strip(),
            revenuecat_api_base=env.get("REVENUECAT_API_BASE") or REVENUECAT_API,
            sendgrid_api_key=_read_secret(env, "SENDGRID_API_KEY", unresolved),
            sendgrid_from_email=env.get("SENDGRID_FROM_EMAIL") or "support@fl4shcards.com",
            sendgrid_parents_from_email=env.get("SENDGRID_PARENTS_FROM_EMAIL") or "",
            sendgrid_api_base=env.get("SENDGRID_API_BASE") or SENDGRID_API,
            app_redeem_url=env.get("APP_REDEEM_URL") or "fl4sh://redeem",
            marketing_base_url=env.get("MARKETING_BASE_URL") or "https://www.fl4shcards.com",
            auth_jwt_secret=_read_secret(env, "SUPABASE_JWT_SECRET", unresolved),
            auth_jwt_audience=env.get("AUTH_JWT_AUDIENCE") or "authenticated",
            parent_claims_table=env.get("PARENT_CLAIMS_TABLE") or "fl4sh-parent-claims",
            parent_invites_table=env.get("PARENT_INVITES_TABLE") or "fl4sh-parent-invites",
            billing_events_table=env.get("BILLING_EVENTS_TABLE") or "fl4sh-billing-events",
            invite_daily_limit=_read_int(env, "PARENT_INVITE_DAILY_LIMIT", DEFAULT_INVITE_DAILY_LIMIT),
            unresolved_secrets=tuple(unresolved),
        )

    def stripe_key_for(self, livemode: bool) -> str:
        """Return the Stripe API key for the given mode or fail loudly."""
        key = self.stripe_secret_key_live if livemode else self.stripe_secret_key_test
        if not key:
            mode = "live" if livemode else "test"
            raise ConfigurationError(f"Stripe {mode} secret key not configured")
        return key

    def require_revenuecat(self) -> None:
        missing = [
            name
            for name, value in (
                ("REVENUECAT_SECRET_API_KEY", self.revenuecat_api_key),
                ("REVENUECAT_PROJECT_ID", self.revenuecat_project_id),
                ("REVENUECAT_PRO_ENTITLEMENT_ID", self.revenuecat_entitlement_id),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing RevenueCat config: {', '.join(missing)}")

    @property
    def parents_from_email(self) -> str:
        return self.sendgrid_parents_from_email or self.sendgrid_from_email


def _read_secret(env: Mapping[str, str], name: str, unresolved: list[str]) -> str:
    """Read a secret from ``<name>_ARN`` in Secrets Manager, falling back to ``<name>``.

    JSON secrets may store the value under ``key``, ``secret`` or ``value``.
    A failed lookup reads as unset and is appended to ``unresolved``.
    """
    arn = env.get(f"{name}_ARN")
    if arn:
        try:
            response = get_secretsmanager().get_secret_value(SecretId=arn)
        except ClientError as e:
            logger.error(f"Failed to retrieve secret {name}: {e}")
            unresolved.append(name)
            return ""
        secret_value = response.get("SecretString", "")
        try:
            secret_json = json.loads(secret_value)
        except json.JSONDecodeError:
            return secret_value.strip()
        if isinstance(secret_json, dict):
            return (secret_json.get("key") or secret_json.get("secret") or secret_json.get("value") or "").strip()
        return secret_value.strip()

    return (env.get(name) or "").strip()


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def get_settings() -> Settings:
    """Return process settings (cached with TTL)."""
    global _settings_cache, _settings_cache_time

    if _settings_cache is not None and (time.time() - _settings_cache_time) < SETTINGS_CACHE_TTL:
        return _settings_cache

    settings = Settings.from_env()
    if settings.unresolved_secrets:
        # Retry the lookup on the next invocation
        logger.warning(f"Not caching settings, unresolved secrets: {', '.join(settings.unresolved_secrets)}")
        return settings

    _settings_cache = settings
    _settings_cache_time = time.time()
    return settings


def reset_settings_cache() -> None:
    """Drop cached settings. Used in tests."""
    global _settings_cache, _settings_cache_time
    _settings_cache = None
    _settings_cache_time = 0.0
