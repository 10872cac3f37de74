"""
Applies a resolved tier and payment metadata to the purchaser's account.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .constants import SKIP_ACCOUNT_NOT_FOUND, EntitlementTier
from .event_normalizer import PurchaseEvent
from .logging_utils import mask_email
from .types import UserAccount

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    account: Optional[UserAccount] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class AccountReconciler:
    """
    Look up the purchaser by email and set role + payment fields.

    Only a failing database call yields FAILED (the provider retries the
    delivery). A missing account is SKIPPED: retrying cannot change it.
    """

    def __init__(self, store):
        self.store = store

    def reconcile(self, event: PurchaseEvent, tier: EntitlementTier) -> ReconcileResult:
        email = event.customer_email
        try:
            account = self.store.find_by_email(email)
            if not account:
                logger.warning(f"Account not found for {mask_email(email)}")
                return ReconcileResult(ReconcileStatus.SKIPPED, reason=SKIP_ACCOUNT_NOT_FOUND)

            paid_at = datetime.now(timezone.utc)
            updated = self.store.apply_payment(
                account["pk"],
                tier.value,
                customer_id=event.customer_id,
                subscription_id=event.subscription_id,
                paid_at=paid_at,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Account update failed for {mask_email(email)}: {e}")
            return ReconcileResult(ReconcileStatus.FAILED, error=str(e))

        if not updated:
            logger.warning(f"Account for {mask_email(email)} vanished before update")
            return ReconcileResult(ReconcileStatus.SKIPPED, reason=SKIP_ACCOUNT_NOT_FOUND)

        account = dict(account)
        account["role"] = tier.value
        account["last_payment_at"] = paid_at.isoformat()
        if event.customer_id:
            account["stripe_customer_id"] = event.customer_id
        if event.subscription_id:
            account["subscription_id"] = event.subscription_id

        logger.info(
            f"Role '{tier.value}' applied to {account['pk']}",
            extra={"user_id": account["pk"], "role": tier.value, "livemode": event.is_live_mode},
        )
        return ReconcileResult(ReconcileStatus.APPLIED, account=account)
