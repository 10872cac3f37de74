"""
Shared pytest fixtures for the billing webhook tests.
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

TEST_WEBHOOK_SECRET = "whsec_test_secret"
USERS_TABLE = "moov-users"
BILLING_EVENTS_TABLE = "moov-billing-events"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


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
def reset_secret_caches():
    """Reset cached Stripe/lemlist secrets so tests don't leak config."""
    import shared.campaign_sync as campaign_sync
    from shared.billing_utils import reset_stripe_secrets_cache

    reset_stripe_secrets_cache()
    campaign_sync._api_key_cache = None
    campaign_sync._api_key_cache_time = 0.0
    yield
    reset_stripe_secrets_cache()
    campaign_sync._api_key_cache = None
    campaign_sync._api_key_cache_time = 0.0


def create_dynamodb_tables(dynamodb):
    """Create the users and billing-events tables with their GSIs."""
    dynamodb.create_table(
        TableName=USERS_TABLE,
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
            {"AttributeName": "referral_code", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "referral-code-index",
                "KeySchema": [{"AttributeName": "referral_code", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "KEYS_ONLY"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName=BILLING_EVENTS_TABLE,
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},  # event_id
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
    """Provide mocked DynamoDB (and every other AWS service) with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def users_table(mock_dynamodb):
    return mock_dynamodb.Table(USERS_TABLE)


@pytest.fixture
def user_store(users_table):
    from shared.user_store import UserStore

    return UserStore(table=users_table)


@pytest.fixture
def seeded_users(users_table):
    """A referee without referral history and a referrer owning MOOV-ABC123."""
    users_table.put_item(
        Item={
            "pk": "user_buyer",
            "email": "buyer@example.com",
            "role": "member",
            "referral_code": "MOOV-BUY001",
            "referrals_count": 0,
            "free_months": 0,
            "filleuls": [],
        }
    )
    users_table.put_item(
        Item={
            "pk": "user_referrer",
            "email": "referrer@example.com",
            "role": "community",
            "referral_code": "MOOV-ABC123",
            "referrals_count": 1,
            "free_months": 0,
            "filleuls": [],
            "subscription_id": "sub_referrer",
        }
    )
    return users_table


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "body": None,
        "isBase64Encoded": False,
        "requestContext": {"requestId": "req-test-123"},
    }


def sign_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs deliveries."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1", livemode: bool = False) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": livemode,
        "created": 1760000000,
        "data": {"object": obj},
    }


class CouponListing:
    """Stand-in for a Stripe list result; auto_paging_iter walks every page."""

    def __init__(self, *pages):
        self.pages = pages
        self.pages_read = 0

    def auto_paging_iter(self):
        for page in self.pages:
            self.pages_read += 1
            yield from page


@pytest.fixture
def checkout_session():
    """A completed subscription checkout carrying a referral custom field."""
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_buyer",
        "subscription": "sub_buyer",
        "amount_total": 1000,
        "customer_email": None,
        "customer_details": {"email": "buyer@example.com", "name": "Jean Dupont"},
        "metadata": {},
        "custom_fields": [
            {
                "key": "codeparrainagereferral",
                "label": {"type": "custom", "custom": "Referral code"},
                "type": "text",
                "text": {"value": "moov-abc123 "},
            }
        ],
    }


@pytest.fixture
def signed_delivery(api_gateway_event):
    """Factory: sign a Stripe event and put it in an API Gateway event."""

    def _build(stripe_event: dict, secret: str = TEST_WEBHOOK_SECRET) -> dict:
        payload = json.dumps(stripe_event)
        api_gateway_event["body"] = payload
        api_gateway_event["headers"] = {"Stripe-Signature": sign_payload(payload, secret)}
        return api_gateway_event

    return _build
