"""Tests for the in-process store and its JSON snapshot."""

import json
from datetime import timedelta

import pytest

from admauth.storage.errors import ConstraintViolation
from admauth.storage.memory import MemoryStore
from admauth.storage.models import (
    BackupCode,
    LoginHistoryEntry,
    Rank,
    Session,
    SessionConfig,
    utcnow,
)

MFA_KEY = "unit-test-mfa-key"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path), mfa_encryption_key=MFA_KEY)


def _snapshot(tmp_path):
    return json.loads((tmp_path / "state" / "memory_store.json").read_text())


class TestAccounts:
    """Tests for account CRUD."""

    def test_create_normalizes_email(self, store):
        account = store.create_account("Ann", "  Ann@Example.COM ", "hash", Rank.ADMIN)

        assert account.email == "ann@example.com"
        assert store.get_account_by_email("ANN@example.com").id == account.id

    def test_duplicate_email_is_a_constraint_violation(self, store):
        store.create_account("Ann", "ann@example.com", "hash")

        with pytest.raises(ConstraintViolation):
            store.create_account("Other", "ANN@example.com", "hash")

    def test_list_accounts_filters_by_rank(self, store):
        store.create_account("Dev", "dev@example.com", "hash", Rank.DEVELOPER)
        wim = store.create_account("Wim", "wim@example.com", "hash", Rank.WERKNEMER)

        assert [a.id for a in store.list_accounts(ranks={Rank.WERKNEMER})] == [wim.id]
        assert store.count_accounts() == 2

    def test_update_and_delete(self, store):
        account = store.create_account("Ann", "ann@example.com", "hash")

        updated = store.update_account(account.id, name="Anna", rank=Rank.MODERATOR)

        assert updated.name == "Anna"
        assert updated.rank is Rank.MODERATOR
        assert store.delete_account(account.id) is True
        assert store.get_account(account.id) is None
        assert store.delete_account(account.id) is False

    def test_update_lockout_applies_transition(self, store):
        account = store.create_account("Ann", "ann@example.com", "hash")

        state = store.update_lockout(
            account.id,
            lambda s: type(s)(failed_count=s.failed_count + 1, total_attempts=s.total_attempts + 1),
        )

        assert state.failed_count == 1
        assert store.get_account(account.id).lockout.total_attempts == 1
        assert store.update_lockout("missing", lambda s: s) is None


class TestTwoFactorPersistence:
    """Tests for secret storage and backup codes."""

    def test_secret_is_encrypted_at_rest(self, store, tmp_path):
        """The snapshot never contains the plaintext TOTP secret."""
        account = store.create_account("Ann", "ann@example.com", "hash")
        store.set_two_factor_secret(account.id, "JBSWY3DPEHPK3PXP")

        raw = _snapshot(tmp_path)["accounts"][0]["two_factor_secret"]

        assert raw and raw != "JBSWY3DPEHPK3PXP"
        assert store.get_account(account.id).two_factor_secret == "JBSWY3DPEHPK3PXP"

    def test_backup_code_is_consumed_once(self, store):
        account = store.create_account("Ann", "ann@example.com", "hash")
        store.set_two_factor_secret(account.id, "JBSWY3DPEHPK3PXP")
        store.enable_two_factor(account.id, [BackupCode(code="AAAA1111")])

        assert store.consume_backup_code(account.id, "AAAA1111", utcnow()) is True
        assert store.consume_backup_code(account.id, "AAAA1111", utcnow()) is False
        assert store.get_account(account.id).backup_codes[0].used is True

    def test_backup_code_must_match_exactly(self, store):
        account = store.create_account("Ann", "ann@example.com", "hash")
        store.set_two_factor_secret(account.id, "JBSWY3DPEHPK3PXP")
        store.enable_two_factor(account.id, [BackupCode(code="AAAA1111")])

        for attempt in ("AAAA111", "AAAA11111", "aaaa1111", "", "ÄAAA1111"):
            assert store.consume_backup_code(account.id, attempt, utcnow()) is False
        assert store.get_account(account.id).backup_codes[0].used is False

    def test_claim_totp_step_is_monotonic(self, store):
        account = store.create_account("Ann", "ann@example.com", "hash")

        assert store.claim_totp_step(account.id, 10) is True
        assert store.claim_totp_step(account.id, 10) is False
        assert store.claim_totp_step(account.id, 9) is False
        assert store.claim_totp_step(account.id, 11) is True


class TestSessions:
    """Tests for session rows."""

    def test_cap_rejects_when_eviction_disabled(self, store):
        account = store.create_account("Ann", "ann@example.com", "hash")
        store.create_session(Session.new(account.id, "cred-1"), max_active=1)

        with pytest.raises(ConstraintViolation):
            store.create_session(
                Session.new(account.id, "cred-2"), max_active=1, evict_oldest=False
            )

    def test_session_for_unknown_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new("missing", "cred-1"))

    def test_expire_sessions(self, store):
        account = store.create_account("Ann", "ann@example.com", "hash")
        now = utcnow()
        session = Session.new(account.id, "cred-1", timeout_days=1, now=now)
        store.create_session(session, now=now)

        assert store.expire_sessions(now) == []
        expired = store.expire_sessions(now + timedelta(days=2))

        assert [s.session_token for s in expired] == [session.session_token]
        assert store.get_session_by_credential("cred-1") is None


class TestSnapshot:
    """Tests for reloading the JSON snapshot."""

    def test_state_survives_reload(self, store, tmp_path):
        account = store.create_account("Ann", "ann@example.com", "hash", Rank.MODERATOR)
        session = Session.new(account.id, "cred-1")
        store.create_session(session)
        store.append_login_history(
            LoginHistoryEntry(
                id="h1",
                email="ann@example.com",
                user_id=account.id,
                success=True,
                failure_reason=None,
                session_token=session.session_token,
                ip_address="127.0.0.1",
                user_agent="pytest",
                timestamp=utcnow(),
            )
        )
        store.save_session_config(SessionConfig(session_timeout_days=7))

        reloaded = MemoryStore(str(tmp_path), mfa_encryption_key=MFA_KEY)

        assert reloaded.get_account(account.id).rank is Rank.MODERATOR
        assert reloaded.get_session(session.session_token).user_id == account.id
        assert [e.id for e in reloaded.list_login_history(email="ann@example.com")] == ["h1"]
        assert reloaded.get_session_config().session_timeout_days == 7

    def test_history_is_bounded(self, tmp_path):
        """Only the newest entries are kept once the limit is reached."""
        store = MemoryStore(str(tmp_path), mfa_encryption_key=MFA_KEY, history_limit=3)
        now = utcnow()
        for index in range(5):
            store.append_login_history(
                LoginHistoryEntry(
                    id=f"h{index}",
                    email="ann@example.com",
                    user_id=None,
                    success=False,
                    failure_reason="user_not_found",
                    session_token=None,
                    ip_address=None,
                    user_agent="pytest",
                    timestamp=now + timedelta(seconds=index),
                )
            )

        assert [e.id for e in store.list_login_history()] == ["h4", "h3", "h2"]
        assert len(_snapshot(tmp_path)["login_history"]) == 3
