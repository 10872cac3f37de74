"""
DynamoDB helpers for user account operations.

The users table is keyed by `pk` (user id) and carries two GSIs:
`email-index` for webhook lookups and `referral-code-index` for
referral attribution. Records are created by the signup flow; this module
only reads and updates existing rows.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Iterator, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .types import ReferralEntry, UserAccount

logger = logging.getLogger(__name__)

USERS_TABLE = os.environ.get("USERS_TABLE", "moov-users")


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class UserStore:
    """Point lookups and field-level updates on the users table."""

    def __init__(self, table=None):
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(USERS_TABLE)
        return self._table

    def get(self, user_id: str) -> Optional[UserAccount]:
        response = self.table.get_item(Key={"pk": user_id}, ConsistentRead=True)
        return response.get("Item")

    def find_by_email(self, email: str) -> Optional[UserAccount]:
        """
        Find the account registered with this email.

        Duplicate emails are not disambiguated: the first match wins.
        """
        response = self.table.query(
            IndexName="email-index",
            KeyConditionExpression=Key("email").eq(email),
        )
        items = response.get("Items", [])
        if len(items) > 1:
            logger.warning(f"{len(items)} accounts share one email, using {items[0]['pk']}")
        return items[0] if items else None

    def find_by_referral_code(self, code: str) -> Optional[UserAccount]:
        """Resolve a referral code to the full record of its owner."""
        response = self.table.query(
            IndexName="referral-code-index",
            KeyConditionExpression=Key("referral_code").eq(code),
            Limit=1,
        )
        items = response.get("Items", [])
        if not items:
            return None
        # GSI projects keys only; read the authoritative record
        return self.get(items[0]["pk"])

    def apply_payment(
        self,
        user_id: str,
        role: str,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """
        Set role and payment metadata in one update.

        Last-write-wins: repeating the call with the same inputs leaves the
        same role and ids, only `last_payment_at` moves forward.

        Returns:
            False if the record disappeared between lookup and update
        """
        paid_at = paid_at or datetime.now(timezone.utc)

        set_parts = ["#role = :role", "last_payment_at = :paid_at"]
        values = {":role": role, ":paid_at": paid_at.isoformat()}

        if customer_id:
            set_parts.append("stripe_customer_id = :customer_id")
            values[":customer_id"] = customer_id
        if subscription_id:
            set_parts.append("subscription_id = :subscription_id")
            values[":subscription_id"] = subscription_id

        try:
            self.table.update_item(
                Key={"pk": user_id},
                UpdateExpression="SET " + ", ".join(set_parts),
                ConditionExpression="attribute_exists(pk)",
                ExpressionAttributeNames={"#role": "role"},
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise
        return True

    def credit_referrer(
        self,
        referrer_id: str,
        expected_count: int,
        count_exists: bool,
        free_months_delta: int,
        entry: ReferralEntry,
    ) -> bool:
        """
        Compare-and-swap the referrer's ledger.

        Succeeds only if `referrals_count` still equals `expected_count` and
        the referee has not been credited before. Appends the referee to the
        `filleuls` list and the `filleul_ids` set in the same write.

        Returns:
            False if the condition failed (concurrent writer or duplicate)
        """
        count_condition = "referrals_count = :expected" if count_exists else "attribute_not_exists(referrals_count)"
        values = {
            ":new_count": expected_count + 1,
            ":months": free_months_delta,
            ":zero": 0,
            ":now": entry["subscribed_at"],
            ":empty": [],
            ":entry": [dict(entry)],
            ":rid": entry["referee_id"],
            ":rid_set": {entry["referee_id"]},
        }
        if count_exists:
            values[":expected"] = expected_count

        try:
            self.table.update_item(
                Key={"pk": referrer_id},
                UpdateExpression=(
                    "SET referrals_count = :new_count, "
                    "free_months = if_not_exists(free_months, :zero) + :months, "
                    "last_referral_at = :now, "
                    "filleuls = list_append(if_not_exists(filleuls, :empty), :entry) "
                    "ADD filleul_ids :rid_set"
                ),
                ConditionExpression=(
                    f"attribute_exists(pk) AND {count_condition} AND NOT contains(filleul_ids, :rid)"
                ),
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise
        return True

    def attribute_referral(self, referee_id: str, referrer_id: str, code: str) -> bool:
        """
        Write-once attribution of a referee to its referrer.

        Returns:
            False if the referee was already attributed (nothing written)
        """
        try:
            self.table.update_item(
                Key={"pk": referee_id},
                UpdateExpression="SET referred_by = :referrer, referral_code_used = :code",
                ConditionExpression="attribute_exists(pk) AND attribute_not_exists(referred_by)",
                ExpressionAttributeValues={":referrer": referrer_id, ":code": code},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise
        return True

    def assign_referral_code(self, user_id: str, code: str) -> bool:
        """
        Give an account its own referral code and zeroed ledger fields.

        The code is immutable once set; returns False if one already exists.
        """
        try:
            self.table.update_item(
                Key={"pk": user_id},
                UpdateExpression=(
                    "SET referral_code = :code, "
                    "referrals_count = if_not_exists(referrals_count, :zero), "
                    "free_months = if_not_exists(free_months, :zero), "
                    "filleuls = if_not_exists(filleuls, :empty)"
                ),
                ConditionExpression="attribute_exists(pk) AND attribute_not_exists(referral_code)",
                ExpressionAttributeValues={":code": code, ":zero": 0, ":empty": []},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise
        return True

    def referral_code_exists(self, code: str) -> bool:
        response = self.table.query(
            IndexName="referral-code-index",
            KeyConditionExpression=Key("referral_code").eq(code),
            Limit=1,
        )
        return bool(response.get("Items"))

    def scan_without_referral_code(self) -> Iterator[UserAccount]:
        """Yield every account that has no referral code yet."""
        scan_kwargs = {
            "FilterExpression": Attr("referral_code").not_exists(),
            "ProjectionExpression": "pk, email",
        }
        while True:
            response = self.table.scan(**scan_kwargs)
            yield from response.get("Items", [])
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key
