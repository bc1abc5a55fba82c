"""
Shared pytest fixtures for FL4SH entitlement tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-supabase-jwt-secret-at-least-32-bytes"
REVENUECAT_BASE = "https://api.revenuecat.com/v2/projects/proj_test/customers"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def stripe_signature_header(payload: bytes, secret: str, timestamp=None) -> str:
    """Sign ``payload`` the way Stripe does for webhook deliveries."""
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def pytest_configure(config):
    """Set AWS credentials and service config before test collection."""
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")

    # Fresh httpx client per call so respx sees every request
    os.environ["USE_CONNECTION_POOLING"] = "false"

    os.environ["STRIPE_SECRET_KEY"] = "sk_live_test"
    os.environ["STRIPE_SECRET_KEY_TEST"] = "sk_test_test"
    os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    os.environ["REVENUECAT_SECRET_API_KEY"] = "rc_secret_test"
    os.environ["REVENUECAT_PROJECT_ID"] = "proj_test"
    os.environ["REVENUECAT_PRO_ENTITLEMENT_ID"] = "entl_pro"
    os.environ["SENDGRID_API_KEY"] = "SG.test"
    os.environ["SENDGRID_FROM_EMAIL"] = "support@fl4shcards.com"
    os.environ["SUPABASE_JWT_SECRET"] = JWT_SECRET


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from shared.aws_clients import reset_clients

    reset_clients()


@pytest.fixture(autouse=True)
def reset_settings():
    """Drop cached settings so env changes in one test don't leak."""
    from shared.config import reset_settings_cache

    reset_settings_cache()
    yield
    reset_settings_cache()


def create_dynamodb_tables(dynamodb):
    """Create the claims, invites and billing events tables."""
    dynamodb.create_table(
        TableName="fl4sh-parent-claims",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],  # claim id
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "claim_code", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "claim-code-index",
                "KeySchema": [{"AttributeName": "claim_code", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "KEYS_ONLY"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="fl4sh-parent-invites",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # user_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # created_at#invite_id
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="fl4sh-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # event_type
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def settings():
    from shared.config import Settings

    return Settings.from_env()


@pytest.fixture
def claims_table(mock_dynamodb):
    return mock_dynamodb.Table("fl4sh-parent-claims")


@pytest.fixture
def invites_table(mock_dynamodb):
    return mock_dynamodb.Table("fl4sh-parent-invites")


@pytest.fixture
def billing_events_table(mock_dynamodb):
    return mock_dynamodb.Table("fl4sh-billing-events")


@pytest.fixture
def pending_claim(claims_table):
    """A parent claim whose checkout has not been paid yet."""
    item = {
        "pk": "claim_123",
        "child_email": "student@example.com",
        "claim_code": "AB12CD34",
        "status": "pending",
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    claims_table.put_item(Item=item)
    return item


@pytest.fixture
def paid_claim(claims_table):
    """A paid claim whose redemption email already went out."""
    item = {
        "pk": "claim_paid",
        "child_email": "student@example.com",
        "claim_code": "PAID2345",
        "status": "paid",
        "stripe_subscription_id": "sub_parent",
        "stripe_invoice_id": "in_1",
        "livemode": False,
        "paid_expires_at_ms": 1893456000000,
        "paid_at": "2026-01-01T00:00:00+00:00",
        "redeem_email_sent_at": "2026-01-01T00:00:01+00:00",
    }
    claims_table.put_item(Item=item)
    return item


@pytest.fixture
def make_token():
    """Mint a Supabase-style session JWT."""
    import jwt

    def _make(user_id="user_123", email="student@example.com", username="sam", expires_in=3600, secret=JWT_SECRET):
        now = int(time.time())
        payload = {
            "sub": user_id,
            "aud": "authenticated",
            "iat": now,
            "exp": now + expires_in,
            "user_metadata": {"username": username} if username else {},
        }
        if email:
            payload["email"] = email
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {"requestId": "test-request-id"},
        "isBase64Encoded": False,
    }


@pytest.fixture
def authed_event(api_gateway_event, make_token):
    """Build an authenticated POST event with a JSON body."""

    def _build(body, **token_kwargs):
        event = dict(api_gateway_event)
        event["headers"] = {"Authorization": f"Bearer {make_token(**token_kwargs)}"}
        event["body"] = json.dumps(body)
        return event

    return _build


@pytest.fixture
def signed_webhook_event(api_gateway_event):
    """Build a webhook event whose Stripe-Signature header is valid."""

    def _build(stripe_event, secret=WEBHOOK_SECRET, timestamp=None):
        body = json.dumps(stripe_event)
        event = dict(api_gateway_event)
        event["body"] = body
        event["headers"] = {
            "Stripe-Signature": stripe_signature_header(body.encode("utf-8"), secret, timestamp),
            "Content-Type": "application/json",
        }
        return event

    return _build


def make_invoice_event(
    event_id="evt_1",
    invoice_id="in_1",
    subscription="sub_1",
    period_end=1893456000,
    livemode=False,
    customer="cus_1",
):
    """Stripe invoice.paid event with one line item."""
    invoice = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "livemode": livemode,
        "subscription": subscription,
        "lines": {"data": [{"period": {"start": period_end - 2592000, "end": period_end}}]},
    }
    return {
        "id": event_id,
        "type": "invoice.paid",
        "created": period_end - 2592000,
        "livemode": livemode,
        "data": {"object": invoice},
    }
