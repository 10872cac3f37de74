"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Synchronizes paid checkouts and invoices into the users table, credits
referrals, and enrolls customers in the campaign of their tier.
Uses Stripe signature verification instead of API key auth.

Response contract:
- 400 when no configured signing secret validates the delivery
- 500 only when the account write fails, so Stripe retries
- 200 for everything else, including deliveries skipped for good
"""

import base64
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import stripe

from shared.account_reconciler import AccountReconciler, ReconcileStatus
from shared.aws_clients import get_dynamodb
from shared.billing_utils import StripeBilling, construct_verified_event, get_stripe_secrets
from shared.campaign_sync import CampaignSync
from shared.errors import (
    BillingNotConfiguredError,
    CollaboratorUnavailableError,
    InternalError,
    WebhookVerificationError,
)
from shared.event_normalizer import EventNormalizer, PurchaseEvent, Skip
from shared.logging_utils import (
    configure_structured_logging,
    mask_email,
    set_request_id,
    set_stripe_event,
)
from shared.metrics import emit_webhook_outcome
from shared.plan_resolver import resolve_tier
from shared.referral_ledger import ReferralLedger
from shared.response_utils import acknowledge
from shared.types import APIGatewayEvent, LambdaResponse
from shared.user_store import UserStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "moov-billing-events")
BILLING_EVENT_TTL_DAYS = 90


# ===========================================
# Billing Event Audit Trail
# ===========================================


def _record_billing_event(stripe_event: dict, status: str, detail: Optional[str] = None):
    """Record webhook event for audit trail (best-effort).

    Not a deduplication mechanism: redeliveries overwrite the same row.
    Failures are logged and do not affect the webhook response.
    """
    try:
        table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
        now = datetime.now(timezone.utc)
        customer_id = stripe_event.get("data", {}).get("object", {}).get("customer") or "unknown"

        table.put_item(
            Item={
                "pk": stripe_event["id"],
                "sk": stripe_event["type"],
                "customer_id": customer_id if isinstance(customer_id, str) else "unknown",
                "processed_at": now.isoformat(),
                "event_created_at": stripe_event.get("created"),
                "livemode": bool(stripe_event.get("livemode")),
                "status": status,
                "detail": detail,
                "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
            }
        )
    except Exception as e:
        logger.error(f"Failed to record billing event {stripe_event.get('id')}: {e}")


# ===========================================
# Request parsing
# ===========================================


def _raw_body(event: APIGatewayEvent) -> bytes:
    """Return the exact bytes Stripe signed."""
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body)
    return body.encode("utf-8") if isinstance(body, str) else body


def _verify(event: APIGatewayEvent, webhook_secrets: list[str]) -> dict:
    headers = event.get("headers") or {}
    sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
    if not sig_header:
        raise WebhookVerificationError("missing_signature", "Missing Stripe signature")

    try:
        return construct_verified_event(_raw_body(event), sig_header, webhook_secrets)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}")
        raise WebhookVerificationError() from e
    except ValueError as e:
        logger.warning(f"Unparseable webhook payload: {e}")
        raise WebhookVerificationError("invalid_webhook_payload", "Invalid webhook payload") from e


# ===========================================
# Pipeline
# ===========================================


def process_purchase(
    stripe_event: dict,
    store: UserStore,
    billing: StripeBilling,
    campaign: CampaignSync,
) -> LambdaResponse:
    """
    Run normalize -> resolve tier -> reconcile -> referral -> campaign.

    Steps run sequentially; referral and campaign only run after the
    account update is applied, and their failures never escape.
    """
    event_type = stripe_event["type"]
    normalized = EventNormalizer(billing).normalize(stripe_event)

    if isinstance(normalized, Skip):
        logger.info(f"Skipping {event_type}: {normalized.reason}")
        _record_billing_event(stripe_event, "skipped", normalized.reason)
        emit_webhook_outcome(normalized.reason, event_type)
        return acknowledge(skipped=normalized.reason)

    purchase: PurchaseEvent = normalized
    tier = resolve_tier(purchase.price_id, purchase.amount_minor_units)

    logger.info(
        f"Event {event_type} | email={mask_email(purchase.customer_email)} | "
        f"price_id={purchase.price_id} | amount={purchase.amount_minor_units} | role={tier.value}",
        extra={"event_id": purchase.event_id, "livemode": purchase.is_live_mode},
    )

    result = AccountReconciler(store).reconcile(purchase, tier)

    if result.status is ReconcileStatus.FAILED:
        _record_billing_event(stripe_event, "failed", result.error)
        emit_webhook_outcome(ReconcileStatus.FAILED.value, event_type)
        return CollaboratorUnavailableError().to_response()

    if result.status is ReconcileStatus.SKIPPED:
        _record_billing_event(stripe_event, "skipped", result.reason)
        emit_webhook_outcome(result.reason, event_type)
        return acknowledge(skipped=result.reason)

    if purchase.referral_code_used:
        ReferralLedger(store, billing).apply_referral(
            purchase.referral_code_used,
            result.account,
            purchase.customer_email,
        )

    campaign.run(purchase.customer_email, tier, purchase.customer_name)

    _record_billing_event(stripe_event, "success")
    emit_webhook_outcome(ReconcileStatus.APPLIED.value, event_type)
    return acknowledge(role=tier.value)


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: set role from the purchased plan, credit referral
    - invoice.paid: set role from the subscription's plan
    Any other event type is acknowledged and ignored.
    """
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secrets = get_stripe_secrets()

    if not stripe_api_key or not webhook_secrets:
        logger.error("Stripe secrets not configured")
        return BillingNotConfiguredError().to_response()

    stripe.api_key = stripe_api_key

    try:
        stripe_event = _verify(event, webhook_secrets)
    except WebhookVerificationError as e:
        return e.to_response()

    set_stripe_event(stripe_event)
    event_type = stripe_event["type"]
    logger.info(f"Processing Stripe event: {event_type} (id={stripe_event['id']})")

    try:
        return process_purchase(stripe_event, UserStore(), StripeBilling(), CampaignSync())
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        # Malformed event data is permanent - return 200, don't retry
        _record_billing_event(stripe_event, "failed", str(e))
        logger.error(f"Permanent error handling {event_type}: {e}")
        return acknowledge(processed=False, error={"code": "invalid_event_data", "message": "Invalid event data"})
    except Exception as e:
        _record_billing_event(stripe_event, "failed", str(e))
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        return InternalError().to_response()
