"""
Tests for the referral code backfill script.
"""

import os
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "scripts"))

from generate_referral_codes import backfill, main  # noqa: E402


@pytest.fixture
def accounts(users_table):
    users_table.put_item(Item={"pk": "user_1", "email": "one@example.com"})
    users_table.put_item(Item={"pk": "user_2", "email": "two@example.com"})
    users_table.put_item(
        Item={"pk": "user_3", "email": "three@example.com", "referral_code": "MOOV-KEEP01", "referrals_count": 4}
    )
    return users_table


class TestBackfill:
    def test_assigns_codes_to_accounts_without_one(self, user_store, accounts):
        stats = backfill(user_store)

        assert stats == {"scanned": 2, "updated": 2, "skipped": 0}
        codes = {user_store.get(pk)["referral_code"] for pk in ("user_1", "user_2")}
        assert len(codes) == 2
        assert all(code.startswith("MOOV-") for code in codes)
        assert user_store.get("user_1")["referrals_count"] == 0

    def test_existing_codes_untouched(self, user_store, accounts):
        backfill(user_store)

        user_3 = user_store.get("user_3")
        assert user_3["referral_code"] == "MOOV-KEEP01"
        assert user_3["referrals_count"] == 4

    def test_dry_run_writes_nothing(self, user_store, accounts, capsys):
        stats = backfill(user_store, dry_run=True)

        assert stats["updated"] == 2
        assert "referral_code" not in user_store.get("user_1")
        assert "[dry-run]" in capsys.readouterr().out

    def test_concurrent_assignment_is_skipped(self, user_store, accounts):
        with patch.object(user_store, "assign_referral_code", return_value=False):
            stats = backfill(user_store)

        assert stats == {"scanned": 2, "updated": 0, "skipped": 2}

    def test_rerun_is_noop(self, user_store, accounts):
        backfill(user_store)

        assert backfill(user_store) == {"scanned": 0, "updated": 0, "skipped": 0}


class TestMain:
    def test_main_uses_default_store(self, mock_dynamodb, accounts, capsys):
        with patch.object(sys, "argv", ["generate_referral_codes.py", "--dry-run"]):
            main()

        assert "2 accounts would be updated" in capsys.readouterr().out
