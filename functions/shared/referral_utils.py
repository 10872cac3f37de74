"""
Referral Program Utilities.

Handles:
- Referral code generation and validation
- Email canonicalization for self-referral prevention
- Reward cadence (one free month every second referral)
"""

import re
import secrets

from .constants import (
    REFERRAL_CODE_ALPHABET,
    REFERRAL_CODE_LENGTH,
    REFERRAL_CODE_PREFIX,
    REFERRALS_PER_FREE_MONTH,
)

# Accepts generated MOOV- codes plus hand-made legacy codes
REFERRAL_CODE_REGEX = re.compile(r"^[A-Z0-9_-]{4,32}$")


# ===========================================
# Email Canonicalization
# ===========================================


def canonicalize_email(email: str) -> str:
    """
    Canonicalize email for comparison (strip Gmail dots/plus-aliases).

    This prevents self-referral via email aliases like:
    - john.doe@gmail.com vs johndoe@gmail.com
    - john+referral@gmail.com vs john@gmail.com

    Args:
        email: Email address to canonicalize

    Returns:
        Canonicalized email address
    """
    if not email or "@" not in email:
        return email.lower() if email else ""

    local, domain = email.lower().split("@", 1)

    if domain in ("gmail.com", "googlemail.com"):
        local = local.replace(".", "")
        if "+" in local:
            local = local.split("+")[0]
        domain = "gmail.com"

    return f"{local}@{domain}"


def is_self_referral(referrer_email: str, referred_email: str) -> bool:
    """True if both emails canonicalize to the same address."""
    if not referrer_email or not referred_email:
        return False
    return canonicalize_email(referrer_email) == canonicalize_email(referred_email)


# ===========================================
# Referral Codes
# ===========================================


def generate_referral_code() -> str:
    """
    Generate a referral code like "MOOV-7K2QXD".

    Returns:
        Prefixed code with 6 upper-case alphanumeric characters
    """
    suffix = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
    return f"{REFERRAL_CODE_PREFIX}{suffix}"


def is_valid_referral_code(code: str) -> bool:
    if not code:
        return False
    return bool(REFERRAL_CODE_REGEX.fullmatch(code))


def generate_unique_referral_code(store, max_attempts: int = 5) -> str:
    """
    Generate a referral code no account owns yet.

    Args:
        store: UserStore used for the existence check
        max_attempts: Maximum attempts to generate unique code

    Raises:
        RuntimeError: If unable to generate unique code
    """
    for _ in range(max_attempts):
        code = generate_referral_code()
        if not store.referral_code_exists(code):
            return code

    # 36^6 codes; hitting this means the table is nearly full or the index is broken
    raise RuntimeError("Failed to generate unique referral code")


# ===========================================
# Reward Cadence
# ===========================================


def is_reward_due(referrals_count: int) -> bool:
    """True if reaching this referral count earns a free month."""
    return referrals_count > 0 and referrals_count % REFERRALS_PER_FREE_MONTH == 0
