"""
Transactional email via SendGrid, plus the two parent-flow templates.
"""

import html
import logging
import time
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, urlencode

import httpx

from .config import Settings
from .errors import ConfigurationError, EmailDeliveryError
from .http_client import get_http_client
from .logging_utils import log_external_call, mask_email

logger = logging.getLogger(__name__)

REDEEM_EMAIL_SUBJECT = "Your FL4SH Pro code is ready"
PARENT_INVITE_SUBJECT = "FL4SH — Parent/guardian invite"


def send_email(
    settings: Settings,
    to: str,
    subject: str,
    html_body: str,
    from_email: Optional[str] = None,
    http: Optional[httpx.Client] = None,
) -> None:
    """Send one HTML email through SendGrid's v3 mail/send endpoint.

    Click and open tracking are disabled so claim links are not rewritten.

    Raises:
        ConfigurationError: SENDGRID_API_KEY is not set
        EmailDeliveryError: transport failure or non-2xx response
    """
    if not settings.sendgrid_api_key:
        raise ConfigurationError("SENDGRID_API_KEY not configured")

    payload = {
        "personalizations": [{"to": [{"email": to}]}],
        "from": {"email": from_email or settings.sendgrid_from_email, "name": settings.sendgrid_from_name},
        "subject": subject,
        "content": [{"type": "text/html", "value": html_body}],
        "tracking_settings": {
            "click_tracking": {"enable": False, "enable_text": False},
            "open_tracking": {"enable": False},
        },
    }

    client = http or get_http_client()
    start = time.time()
    try:
        response = client.post(
            f"{settings.sendgrid_api_base.rstrip('/')}/v3/mail/send",
            json=payload,
            headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
        )
    except httpx.HTTPError as e:
        log_external_call(logger, "sendgrid", "mail_send", False, (time.time() - start) * 1000, str(e))
        raise EmailDeliveryError(f"SendGrid request failed: {e}") from e

    latency_ms = (time.time() - start) * 1000
    if response.status_code >= 300:
        error = f"{response.status_code} {response.text[:500]}"
        log_external_call(logger, "sendgrid", "mail_send", False, latency_ms, error)
        raise EmailDeliveryError(f"SendGrid rejected email: {error}", response.status_code)

    log_external_call(logger, "sendgrid", "mail_send", True, latency_ms)
    logger.info(f"Email sent to {mask_email(to)}: {subject}")


def build_redeem_link(settings: Settings, formatted_code: str) -> str:
    separator = "&" if "?" in settings.app_redeem_url else "?"
    return f"{settings.app_redeem_url}{separator}{urlencode({'code': formatted_code})}"


def build_redeem_email_html(formatted_code: str, redeem_link: str) -> str:
    """HTML for the one-time 'your parent bought you Pro' email."""
    code = html.escape(formatted_code)
    link = html.escape(redeem_link, quote=True)
    year = datetime.now(timezone.utc).year
    return f"""
    <!doctype html>
    <html lang="en">
      <head><meta charset="utf-8" /><title>FL4SH Pro</title></head>
      <body style="margin:0;padding:0;background:#070A12;color:#E6EAF2;font-family:-apple-system,Segoe UI,Roboto,Arial,sans-serif;">
        <div style="max-width:640px;margin:0 auto;padding:28px 22px;">
          <h1 style="font-size:22px;">Your FL4SH Pro access is ready</h1>
          <p style="font-size:14px;line-height:1.6;">
            A parent or guardian has unlocked FL4SH Pro for you. Open the app and redeem this code:
          </p>
          <div style="margin:18px 0;padding:14px;border-radius:12px;background:#0B1020;text-align:center;
                      font-size:24px;font-weight:800;letter-spacing:2px;">{code}</div>
          <div style="text-align:center;">
            <a href="{link}" style="display:inline-block;padding:12px 16px;border-radius:12px;
               background:#00E5FF;color:#0B1020;font-weight:800;text-decoration:none;">Redeem in the app</a>
          </div>
          <p style="font-size:12px;opacity:0.75;margin-top:18px;">
            The code can be used once. Keep it private.
          </p>
          <p style="font-size:11px;opacity:0.55;text-align:center;">© {year} FL4SH</p>
        </div>
      </body>
    </html>
    """


def build_parent_invite_html(settings: Settings, child_email: str, child_username: Optional[str] = None) -> str:
    """HTML for the student-initiated parent invite, with a pre-filled purchase link."""
    marketing_base = settings.marketing_base_url.rstrip("/")
    purchase_link = f"{marketing_base}/parents?child_email={quote(child_email, safe='')}"
    child = html.escape(child_email)
    label = f"{html.escape(child_username)} ({child})" if child_username else child
    year = datetime.now(timezone.utc).year
    return f"""
    <!doctype html>
    <html lang="en">
      <head><meta charset="utf-8" /><title>FL4SH — Parent invite</title></head>
      <body style="margin:0;padding:0;background:#070A12;color:#E6EAF2;font-family:-apple-system,Segoe UI,Roboto,Arial,sans-serif;">
        <div style="max-width:640px;margin:0 auto;padding:28px 22px;">
          <h1 style="font-size:22px;">Help {html.escape(child_username) if child_username else "your student"} unlock FL4SH</h1>
          <p style="font-size:14px;line-height:1.6;">
            <strong>{label}</strong> is using FL4SH for revision and has invited you to unlock Pro access.
          </p>
          <ol style="font-size:14px;line-height:1.7;">
            <li>Open the parent page below (the student email is pre-filled).</li>
            <li>Complete the checkout on your device.</li>
            <li>The student receives a code and redeems it in the app to unlock Pro.</li>
          </ol>
          <div style="text-align:center;">
            <a href="{html.escape(purchase_link, quote=True)}" style="display:inline-block;padding:12px 16px;
               border-radius:12px;background:#00E5FF;color:#0B1020;font-weight:800;text-decoration:none;">Open parent page</a>
          </div>
          <p style="font-size:12px;opacity:0.85;text-align:center;">
            If the email is not pre-filled, enter <strong>{child}</strong> during checkout.
          </p>
          <p style="font-size:12px;opacity:0.75;text-align:center;">If you didn't request this, you can ignore this email.</p>
          <p style="font-size:11px;opacity:0.55;text-align:center;">© {year} FL4SH</p>
        </div>
      </body>
    </html>
    """
