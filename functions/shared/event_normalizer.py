"""
Stripe event -> canonical purchase record.

Only completed checkouts and paid invoices are purchases. Everything the
pipeline needs downstream (email, price id candidates, amount, referral
code) is extracted here; Stripe round trips that fail are logged and
degrade to the amount fallback instead of failing the delivery.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .constants import (
    CHECKOUT_COMPLETED,
    INVOICE_PAID,
    PURCHASE_EVENT_TYPES,
    REFERRAL_FIELD_MARKER,
    SKIP_NO_EMAIL,
    SKIP_UNSUPPORTED_EVENT,
)

logger = logging.getLogger(__name__)


class PurchaseEventType(str, Enum):
    CHECKOUT_COMPLETED = CHECKOUT_COMPLETED
    INVOICE_PAID = INVOICE_PAID
    OTHER = "other"

    @classmethod
    def from_stripe(cls, event_type: str) -> "PurchaseEventType":
        """Classify a Stripe event type; anything not a purchase is OTHER."""
        if event_type in PURCHASE_EVENT_TYPES:
            return cls(event_type)
        return cls.OTHER


@dataclass(frozen=True)
class PurchaseEvent:
    """A completed purchase, built once per delivery and never persisted."""

    event_id: str
    event_type: PurchaseEventType
    is_live_mode: bool
    customer_email: str
    price_id: Optional[str] = None
    amount_minor_units: Optional[int] = None
    referral_code_used: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_name: Optional[str] = None


@dataclass(frozen=True)
class Skip:
    """Delivery acknowledged without side effects."""

    reason: str
    event_type: str


def _get(obj: Any, *path: str) -> Any:
    """Walk nested Stripe dicts, returning None at the first missing key."""
    for key in path:
        if not obj:
            return None
        obj = obj.get(key)
    return obj


def normalize_referral_code(raw: Optional[str]) -> Optional[str]:
    """Trim and upper-case a user-entered referral code; blank becomes None."""
    if not raw or not isinstance(raw, str):
        return None
    code = raw.strip().upper()
    return code or None


def extract_referral_code(session: dict) -> Optional[str]:
    """
    Read the referral code a customer entered at checkout.

    Explicit metadata wins; otherwise the first custom field whose key or
    label mentions "referral" (case-insensitive) supplies its text value.
    """
    metadata = session.get("metadata") or {}
    for key in ("referralCode", "referral_code"):
        code = normalize_referral_code(metadata.get(key))
        if code:
            return code

    for field in session.get("custom_fields") or []:
        key = (field.get("key") or "").lower()
        label = (_get(field, "label", "custom") or "").lower()
        if REFERRAL_FIELD_MARKER in key or REFERRAL_FIELD_MARKER in label:
            code = normalize_referral_code(_get(field, "text", "value"))
            if code:
                return code

    return None


def extract_amount(obj: dict) -> Optional[int]:
    for key in ("amount_total", "total", "amount_paid", "amount_due"):
        amount = obj.get(key)
        if amount:
            return int(amount)
    return None


def extract_subscription_id(obj: dict) -> Optional[str]:
    subscription = obj.get("subscription")
    if not subscription:
        # Newer API versions nest it under the invoice parent
        subscription = _get(obj, "parent", "subscription_details", "subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


class EventNormalizer:
    """Turns a verified Stripe event into a PurchaseEvent or a Skip."""

    def __init__(self, billing):
        self.billing = billing

    def normalize(self, stripe_event: dict) -> Union[PurchaseEvent, Skip]:
        event_type = stripe_event["type"]
        kind = PurchaseEventType.from_stripe(event_type)
        if kind is PurchaseEventType.OTHER:
            return Skip(reason=SKIP_UNSUPPORTED_EVENT, event_type=event_type)

        obj = stripe_event["data"]["object"]
        customer_id = obj.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        subscription_id = extract_subscription_id(obj)

        email = self._extract_email(kind, obj, customer_id)
        if not email:
            logger.warning(f"No customer email on {event_type} (id={stripe_event.get('id')})")
            return Skip(reason=SKIP_NO_EMAIL, event_type=event_type)

        price_id = self._extract_price_id(kind, obj, subscription_id)

        # Invoices carry no custom fields, so only checkouts attribute referrals
        referral_code = extract_referral_code(obj) if kind is PurchaseEventType.CHECKOUT_COMPLETED else None

        return PurchaseEvent(
            event_id=stripe_event.get("id", ""),
            event_type=kind,
            is_live_mode=bool(stripe_event.get("livemode")),
            customer_email=email,
            price_id=price_id,
            amount_minor_units=extract_amount(obj),
            referral_code_used=referral_code,
            customer_id=customer_id,
            subscription_id=subscription_id,
            customer_name=_get(obj, "customer_details", "name") or obj.get("customer_name"),
        )

    def _extract_email(self, kind: PurchaseEventType, obj: dict, customer_id: Optional[str]) -> Optional[str]:
        email = _get(obj, "customer_details", "email") or obj.get("customer_email")
        if email:
            return email

        if kind is PurchaseEventType.INVOICE_PAID and customer_id:
            try:
                return self.billing.get_customer_email(customer_id)
            except Exception as e:
                logger.error(f"Could not retrieve customer {customer_id}: {e}")
        return None

    def _extract_price_id(
        self,
        kind: PurchaseEventType,
        obj: dict,
        subscription_id: Optional[str],
    ) -> Optional[str]:
        if subscription_id:
            try:
                price_id = self.billing.get_subscription_price_id(subscription_id)
                if price_id:
                    return price_id
            except Exception as e:
                logger.error(f"Could not retrieve subscription {subscription_id}: {e}")

        if kind is PurchaseEventType.CHECKOUT_COMPLETED and obj.get("id"):
            try:
                price_id = self.billing.get_checkout_price_id(obj["id"])
                if price_id:
                    return price_id
            except Exception as e:
                logger.error(f"Could not list line items for session {obj['id']}: {e}")

        if kind is PurchaseEventType.INVOICE_PAID:
            lines = _get(obj, "lines", "data") or []
            if lines:
                price_id = _get(lines[0], "price", "id") or _get(lines[0], "pricing", "price_details", "price")
                if price_id:
                    return price_id

        return None
