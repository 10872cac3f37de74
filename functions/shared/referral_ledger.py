"""
Referral ledger: credits the referrer when a referred customer pays.

Runs only after the referee's account update succeeded. Every failure is
caught and logged here so the purchase itself is never failed by the
referral program.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .event_normalizer import normalize_referral_code
from .logging_utils import mask_email
from .metrics import emit_metric
from .referral_utils import is_reward_due, is_self_referral, is_valid_referral_code
from .types import ReferralEntry, UserAccount

logger = logging.getLogger(__name__)

# Compare-and-swap attempts before giving up on a contended referrer
MAX_LEDGER_ATTEMPTS = 5


@dataclass
class ReferralOutcome:
    credited: bool = False
    month_granted: bool = False
    discount_applied: bool = False
    referrer_id: Optional[str] = None
    referrals_count: Optional[int] = None
    reason: Optional[str] = None


class ReferralLedger:
    """
    Attribute a referee to its referrer and advance the referrer's counters.

    Ledger writes are idempotent: a referee already present in the
    referrer's `filleul_ids` is never counted twice, so redelivered events
    do not grant extra free months.
    """

    def __init__(self, store, billing):
        self.store = store
        self.billing = billing

    def apply_referral(self, referral_code: str, referee_account: UserAccount, referee_email: str) -> ReferralOutcome:
        try:
            return self._apply(referral_code, referee_account, referee_email)
        except Exception as e:
            logger.error(f"Referral processing failed for {mask_email(referee_email)}: {e}", exc_info=True)
            return ReferralOutcome(reason="error")

    def _apply(self, referral_code: str, referee_account: UserAccount, referee_email: str) -> ReferralOutcome:
        code = normalize_referral_code(referral_code)
        if not is_valid_referral_code(code):
            logger.info(f"Ignoring malformed referral code {referral_code!r}")
            return ReferralOutcome(reason="invalid_code")

        referrer = self.store.find_by_referral_code(code)
        if not referrer:
            logger.info(f"Referral code {code} matches no account")
            return ReferralOutcome(reason="unknown_code")

        referrer_id = referrer["pk"]
        referee_id = referee_account["pk"]

        if referrer_id == referee_id or is_self_referral(referrer.get("email"), referee_email):
            logger.warning(f"Self-referral ignored for {referee_id} (code {code})")
            return ReferralOutcome(referrer_id=referrer_id, reason="self_referral")

        if not self.store.attribute_referral(referee_id, referrer_id, code):
            current = self.store.get(referee_id) or {}
            if current.get("referred_by") != referrer_id:
                logger.warning(
                    f"{referee_id} already attributed to {current.get('referred_by')}, code {code} ignored"
                )
                return ReferralOutcome(referrer_id=referrer_id, reason="already_attributed")
            # Same referrer: earlier delivery stopped before crediting, resume

        credited = self._credit(referrer, referee_id, referee_email)
        if credited is None:
            return ReferralOutcome(referrer_id=referrer_id, reason="already_credited")

        new_count, month_granted, subscription_id = credited
        outcome = ReferralOutcome(
            credited=True,
            month_granted=month_granted,
            referrer_id=referrer_id,
            referrals_count=new_count,
        )
        emit_metric("ReferralCredited")
        logger.info(f"Referral credited to {referrer_id}: count={new_count}, month_granted={month_granted}")

        if month_granted:
            emit_metric("FreeMonthGranted")
            outcome.discount_applied = self._grant_free_month(referrer_id, subscription_id, new_count)

        return outcome

    def _credit(self, referrer: UserAccount, referee_id: str, referee_email: str):
        """
        Compare-and-swap loop on the referrer's counters.

        Returns (new_count, month_granted, subscription_id), or None if the
        referee was already credited.
        """
        referrer_id = referrer["pk"]
        for attempt in range(MAX_LEDGER_ATTEMPTS):
            if referee_id in (referrer.get("filleul_ids") or set()):
                logger.info(f"{referee_id} already credited to {referrer_id}")
                return None

            count = int(referrer.get("referrals_count", 0))
            new_count = count + 1
            month_granted = is_reward_due(new_count)
            entry: ReferralEntry = {
                "referee_id": referee_id,
                "referee_email": referee_email,
                "subscribed_at": datetime.now(timezone.utc).isoformat(),
            }

            if self.store.credit_referrer(
                referrer_id,
                expected_count=count,
                count_exists="referrals_count" in referrer,
                free_months_delta=1 if month_granted else 0,
                entry=entry,
            ):
                return new_count, month_granted, referrer.get("subscription_id")

            logger.info(f"Ledger write for {referrer_id} lost a race (attempt {attempt + 1}), re-reading")
            referrer = self.store.get(referrer_id)
            if not referrer:
                raise LookupError(f"Referrer {referrer_id} disappeared during credit")

        raise RuntimeError(f"Referral ledger for {referrer_id} still contended after {MAX_LEDGER_ATTEMPTS} attempts")

    def _grant_free_month(self, referrer_id: str, subscription_id: Optional[str], referrals_count: int) -> bool:
        if not subscription_id:
            logger.info(f"Free month earned by {referrer_id} recorded; no subscription to discount")
            return False

        try:
            coupon_id = self.billing.ensure_referral_coupon()
            return self.billing.apply_coupon_if_undiscounted(
                subscription_id,
                coupon_id,
                idempotency_key=f"referral-month-{referrer_id}-{referrals_count}",
            )
        except Exception as e:
            logger.error(f"Could not apply free month to {subscription_id} for {referrer_id}: {e}")
            return False
