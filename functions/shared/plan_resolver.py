"""
Plan resolution: Stripe price id or paid amount -> entitlement tier.

Pure lookups against static tables built once at import time. Unknown
prices and amounts never raise; they degrade to the default tier so an
unmapped price cannot fail a webhook delivery.
"""

import os
from typing import Mapping, Optional

from .constants import DEFAULT_TIER, EntitlementTier


def _price_ids_from_env(name: str) -> list[str]:
    # Use `or` to handle empty string env vars
    raw = os.environ.get(name) or ""
    return [price_id.strip() for price_id in raw.split(",") if price_id.strip()]


def build_price_table() -> dict[str, EntitlementTier]:
    """Build the price id -> tier table from built-in ids plus environment overrides."""
    table = {
        "price_1Rt7ErFD9N3apMZl5ZJra4sW": EntitlementTier.COMMUNITY,
        "price_1Rt7ILFD9N3apMZlt1kpm4Lx": EntitlementTier.BUSINESS,
        "price_1RtmDdFD9N3apMZlul64n316": EntitlementTier.COMMUNITY,
        "price_1RtmDpFD9N3apMZl6QpQyaQt": EntitlementTier.BUSINESS,
    }
    for price_id in _price_ids_from_env("STRIPE_PRICE_COMMUNITY"):
        table[price_id] = EntitlementTier.COMMUNITY
    for price_id in _price_ids_from_env("STRIPE_PRICE_BUSINESS"):
        table[price_id] = EntitlementTier.BUSINESS
    return table


PRICE_TO_TIER: dict[str, EntitlementTier] = build_price_table()

# Fallback by amount paid, in minor units (cents)
AMOUNT_TO_TIER: dict[int, EntitlementTier] = {
    1000: EntitlementTier.COMMUNITY,  # 10 EUR
    3500: EntitlementTier.BUSINESS,  # 35 EUR
}


def resolve_tier(
    price_id: Optional[str],
    amount_minor_units: Optional[int],
    price_table: Optional[Mapping[str, EntitlementTier]] = None,
    amount_table: Optional[Mapping[int, EntitlementTier]] = None,
) -> EntitlementTier:
    """
    Resolve the tier a customer purchased.

    Priority: known price id, then known amount, then the default tier.

    Args:
        price_id: Stripe price id of the purchase, if it could be determined
        amount_minor_units: Amount paid in cents, if present on the event
        price_table: Override for PRICE_TO_TIER (tests)
        amount_table: Override for AMOUNT_TO_TIER (tests)

    Returns:
        Resolved EntitlementTier
    """
    prices = PRICE_TO_TIER if price_table is None else price_table
    amounts = AMOUNT_TO_TIER if amount_table is None else amount_table

    if price_id and price_id in prices:
        return prices[price_id]

    if amount_minor_units is not None and amount_minor_units in amounts:
        return amounts[amount_minor_units]

    return DEFAULT_TIER
