"""Tests for the developer bootstrap script."""

from admauth.service.runtime import get_runtime
from admauth.storage.models import Rank
from scripts.bootstrap_admin import bootstrap_developer

PASSWORD = "TestPassword123!"


class TestBootstrapDeveloper:
    def test_creates_developer(self):
        result = bootstrap_developer("root@example.com", "Root", PASSWORD)

        assert result["status"] == "created"
        account = get_runtime().store.get_account(result["user_id"])
        assert account.rank is Rank.DEVELOPER
        assert get_runtime().passwords.verify(account.password_hash, PASSWORD)

    def test_promotes_existing_account(self):
        store = get_runtime().store
        account = store.create_account("Wim", "wim@example.com", "hash", Rank.WERKNEMER)

        result = bootstrap_developer("wim@example.com", "Wim", PASSWORD)

        assert result["status"] == "promoted"
        assert store.get_account(account.id).rank is Rank.DEVELOPER
        again = bootstrap_developer("wim@example.com", "Wim", PASSWORD)
        assert again["status"] == "already_developer"

    def test_dry_run_changes_nothing(self):
        result = bootstrap_developer("root@example.com", "Root", PASSWORD, dry_run=True)

        assert result["status"] == "dry_run"
        assert get_runtime().store.count_accounts() == 0
