"""
Shared constants for the Moov billing webhook.
"""

from enum import Enum


class EntitlementTier(str, Enum):
    """Role granted to an account after a successful purchase."""

    MEMBER = "member"
    COMMUNITY = "community"
    BUSINESS = "biz"


DEFAULT_TIER = EntitlementTier.MEMBER

# Stripe event types that carry a completed payment
CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
PURCHASE_EVENT_TYPES = (CHECKOUT_COMPLETED, INVOICE_PAID)

# Reward cadence: one free month every N credited referrals
REFERRALS_PER_FREE_MONTH = 2

# Referral codes look like MOOV-7K2QXD
REFERRAL_CODE_PREFIX = "MOOV-"
REFERRAL_CODE_LENGTH = 6
REFERRAL_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

# Marker searched for in checkout custom field keys/labels
REFERRAL_FIELD_MARKER = "referral"

# Skip reasons surfaced in the webhook acknowledgment
SKIP_UNSUPPORTED_EVENT = "unsupported_event"
SKIP_NO_EMAIL = "no_email"
SKIP_ACCOUNT_NOT_FOUND = "account_not_found"

# Campaign API
LEMLIST_API = "https://api.lemlist.com/api"
