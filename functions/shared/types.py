"""
Shared Type Definitions for Lambda Handlers.

Provides TypedDict definitions for AWS Lambda events, responses, and the
user records stored in DynamoDB.
"""

from typing import Any, Optional, TypedDict


class APIGatewayEvent(TypedDict, total=False):
    """API Gateway proxy event structure."""

    httpMethod: str
    headers: dict[str, str]
    body: Optional[str]
    requestContext: dict[str, Any]
    path: str
    isBase64Encoded: bool


class LambdaResponse(TypedDict):
    """Standard Lambda response structure."""

    statusCode: int
    headers: dict[str, str]
    body: str


class ReferralEntry(TypedDict):
    """One referee credited to a referrer (append-only `filleuls` list)."""

    referee_id: str
    referee_email: str
    subscribed_at: str


class UserAccount(TypedDict, total=False):
    """User record in the users table, keyed by `pk` (user id)."""

    pk: str
    email: str
    role: str
    last_payment_at: str
    stripe_customer_id: str
    subscription_id: str
    referral_code: str
    referred_by: str
    referral_code_used: str
    referrals_count: int
    free_months: int
    filleuls: list[ReferralEntry]
    filleul_ids: set[str]
    last_referral_at: str
