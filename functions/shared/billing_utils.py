"""Shared billing utilities for Stripe-related operations."""

import json
import logging
import os
import time
from typing import Optional

import stripe

from shared.aws_clients import get_secret_string

logger = logging.getLogger(__name__)

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

REFERRAL_COUPON_NAME = os.environ.get("REFERRAL_COUPON_NAME") or "Referral reward - 1 free month"

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[Optional[str], list[str]] = (None, [])
_stripe_secrets_cache_time = 0.0
STRIPE_CACHE_TTL = 300  # 5 minutes


def _parse_api_key(secret_value: str) -> str:
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value
    if isinstance(secret_json, dict):
        return secret_json.get("key") or secret_value
    return secret_value


def parse_webhook_secrets(secret_value: str) -> list[str]:
    """
    Parse one or more webhook signing secrets.

    Accepts {"secrets": [...]}, {"secret": "..."}, a JSON list, or a
    comma-separated string so test and live secrets can live side by side.
    """
    if not secret_value:
        return []

    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        secret_json = secret_value

    if isinstance(secret_json, dict):
        candidates = secret_json.get("secrets") or secret_json.get("secret") or []
    else:
        candidates = secret_json

    if isinstance(candidates, str):
        candidates = candidates.split(",")

    return [secret.strip() for secret in candidates if isinstance(secret, str) and secret.strip()]


def get_stripe_secrets() -> tuple[Optional[str], list[str]]:
    """Retrieve Stripe API key and webhook signing secrets from Secrets Manager (cached with TTL)."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = None
    webhook_secrets: list[str] = []

    if STRIPE_SECRET_ARN:
        try:
            api_key = _parse_api_key(get_secret_string(STRIPE_SECRET_ARN))
        except Exception as e:
            logger.error(f"Failed to retrieve Stripe API key: {e}")

    if STRIPE_WEBHOOK_SECRET_ARN:
        try:
            webhook_secrets = parse_webhook_secrets(get_secret_string(STRIPE_WEBHOOK_SECRET_ARN))
        except Exception as e:
            logger.error(f"Failed to retrieve Stripe webhook secret: {e}")

    _stripe_secrets_cache = (api_key, webhook_secrets)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secrets


def reset_stripe_secrets_cache():
    """Drop cached secrets. Used in tests for clean state."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, [])
    _stripe_secrets_cache_time = 0.0


def construct_verified_event(payload: bytes, sig_header: str, webhook_secrets: list[str]) -> dict:
    """
    Verify a delivery against each configured secret in turn.

    Returns the event as a plain dict once any secret validates.

    Raises:
        stripe.SignatureVerificationError: if no secret validates
        ValueError: if the payload is not valid JSON
    """
    last_error: Optional[stripe.SignatureVerificationError] = None
    for secret in webhook_secrets:
        try:
            stripe.Webhook.construct_event(payload, sig_header, secret)
        except stripe.SignatureVerificationError as e:
            last_error = e
            continue
        return json.loads(payload)

    raise last_error or stripe.SignatureVerificationError("No webhook secret configured", sig_header)


def _field(obj, key: str, default=None):
    """Index a Stripe object or dict, tolerating missing keys."""
    try:
        value = obj[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def _first_price_id(line_items) -> Optional[str]:
    data = _field(line_items, "data") or []
    if not data:
        return None
    return _field(_field(data[0], "price"), "id")


def has_discount(subscription) -> bool:
    """True if a subscription already carries a discount (legacy or multi-discount field)."""
    return bool(_field(subscription, "discount") or _field(subscription, "discounts"))


class StripeBilling:
    """Narrow wrapper around the Stripe calls the webhook pipeline needs."""

    def __init__(self, coupon_name: str = REFERRAL_COUPON_NAME):
        self.coupon_name = coupon_name

    def get_subscription_price_id(self, subscription_id: str) -> Optional[str]:
        subscription = stripe.Subscription.retrieve(subscription_id)
        return _first_price_id(_field(subscription, "items"))

    def get_checkout_price_id(self, session_id: str) -> Optional[str]:
        line_items = stripe.checkout.Session.list_line_items(session_id, limit=1)
        return _first_price_id(line_items)

    def get_customer_email(self, customer_id: str) -> Optional[str]:
        customer = stripe.Customer.retrieve(customer_id)
        if _field(customer, "deleted"):
            return None
        return _field(customer, "email")

    def ensure_referral_coupon(self) -> str:
        """
        Return the id of the reusable 100%-off, one-billing-cycle coupon.

        Looks the coupon up by name across every page of the listing and
        creates it when absent.
        """
        for coupon in stripe.Coupon.list(limit=100).auto_paging_iter():
            if _field(coupon, "name") == self.coupon_name and _field(coupon, "valid", True):
                return coupon["id"]

        coupon = stripe.Coupon.create(
            name=self.coupon_name,
            percent_off=100,
            duration="once",
        )
        logger.info(f"Created referral coupon {coupon['id']} ({self.coupon_name})")
        return coupon["id"]

    def apply_coupon_if_undiscounted(
        self,
        subscription_id: str,
        coupon_id: str,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        """
        Attach the coupon unless the subscription already carries a discount.

        Returns:
            True if the coupon was attached
        """
        subscription = stripe.Subscription.retrieve(subscription_id)
        if has_discount(subscription):
            logger.info(f"Subscription {subscription_id} already discounted, free month not stacked")
            return False

        modify_kwargs = {"discounts": [{"coupon": coupon_id}]}
        if idempotency_key:
            modify_kwargs["idempotency_key"] = idempotency_key

        stripe.Subscription.modify(subscription_id, **modify_kwargs)
        logger.info(f"Applied coupon {coupon_id} to subscription {subscription_id}")
        return True
