# Shared utilities package
from .constants import DEFAULT_TIER, EntitlementTier
from .errors import APIError
from .plan_resolver import resolve_tier
from .response_utils import acknowledge, error_response

__all__ = [
    "EntitlementTier",
    "DEFAULT_TIER",
    "resolve_tier",
    "APIError",
    "acknowledge",
    "error_response",
]
