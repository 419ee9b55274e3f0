"""Unit tests for TOTP enrollment, verification and backup codes.

Tests for:
- Setup and confirmation
- The +/-2 step acceptance window
- Step replay protection
- Single-use backup codes
- Password re-checks on regenerate and disable
"""

import pytest

from admauth.config import Settings
from admauth.service.errors import (
    BadRequestError,
    InvalidPasswordError,
    InvalidTwoFactorCodeError,
)
from admauth.service.passwords import PasswordManager
from admauth.service.two_factor import TOTP_INTERVAL, TwoFactorEngine, generate_totp
from admauth.storage.memory import MemoryStore
from admauth.storage.models import Rank

PASSWORD = "Sup3r$ecret"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path), mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def passwords():
    return PasswordManager()


@pytest.fixture
def engine(store, passwords, clock):
    settings = Settings(jwt_secret="unit-test-jwt-secret-with-enough-length-0123456789")
    return TwoFactorEngine(store, settings, passwords, clock=clock)


@pytest.fixture
def account(store, passwords):
    return store.create_account("Ann", "ann@example.com", passwords.hash(PASSWORD), Rank.ADMIN)


def _code_at_offset(secret, clock, steps):
    return generate_totp(secret, clock().timestamp() + steps * TOTP_INTERVAL)


@pytest.fixture
def enrolled(engine, account, clock):
    """An account with 2FA enabled; returns (secret, backup codes)."""
    enrollment = engine.setup(account.id)
    codes = engine.confirm(account.id, generate_totp(enrollment.secret, clock().timestamp()))
    # Move past the step claimed by confirmation
    clock.advance(10 * TOTP_INTERVAL)
    return enrollment.secret, codes


class TestSetup:
    """Tests for enrollment."""

    def test_setup_returns_secret_and_otpauth_payload(self, engine, account, store):
        """Setup stores a pending secret and returns a provisioning URI."""
        enrollment = engine.setup(account.id)

        assert len(enrollment.secret) >= 16
        assert enrollment.qr_payload.startswith("otpauth://totp/")
        assert f"secret={enrollment.secret}" in enrollment.qr_payload
        assert "issuer=ADM+System" in enrollment.qr_payload

        stored = store.get_account(account.id)
        assert stored.two_factor_secret == enrollment.secret
        assert stored.two_factor_enabled is False

    def test_confirm_enables_and_issues_backup_codes(self, engine, account, store, clock):
        """A correct first code enables 2FA and returns ten backup codes."""
        enrollment = engine.setup(account.id)

        codes = engine.confirm(account.id, generate_totp(enrollment.secret, clock().timestamp()))

        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert store.get_account(account.id).two_factor_enabled is True

    def test_confirm_rejects_wrong_code(self, engine, account, store):
        """A wrong code leaves 2FA disabled."""
        engine.setup(account.id)

        with pytest.raises(InvalidTwoFactorCodeError):
            engine.confirm(account.id, "000000")
        assert store.get_account(account.id).two_factor_enabled is False

    def test_confirm_without_setup(self, engine, account):
        with pytest.raises(BadRequestError):
            engine.confirm(account.id, "123456")

    def test_setup_twice_after_enabling_fails(self, engine, account, enrolled):
        with pytest.raises(BadRequestError):
            engine.setup(account.id)


class TestTotpWindow:
    """Tests for the acceptance window and replay protection."""

    def test_accepts_two_steps_behind(self, engine, account, enrolled, clock):
        secret, _ = enrolled
        assert engine.verify(account.id, _code_at_offset(secret, clock, -2)) is True

    def test_accepts_two_steps_ahead(self, engine, account, enrolled, clock):
        secret, _ = enrolled
        assert engine.verify(account.id, _code_at_offset(secret, clock, 2)) is True

    def test_rejects_three_steps_ahead(self, engine, account, enrolled, clock):
        """Codes outside +/-2 steps are refused."""
        secret, _ = enrolled
        assert engine.verify(account.id, _code_at_offset(secret, clock, 3)) is False

    def test_rejects_three_steps_behind(self, engine, account, enrolled, clock):
        secret, _ = enrolled
        assert engine.verify(account.id, _code_at_offset(secret, clock, -3)) is False

    def test_code_cannot_be_replayed(self, engine, account, enrolled, clock):
        """An accepted step is claimed and refused the second time."""
        secret, _ = enrolled
        code = _code_at_offset(secret, clock, 0)

        assert engine.verify(account.id, code) is True
        assert engine.verify(account.id, code) is False

    def test_older_step_refused_after_newer_one_used(self, engine, account, enrolled, clock):
        secret, _ = enrolled

        assert engine.verify(account.id, _code_at_offset(secret, clock, 1)) is True
        assert engine.verify(account.id, _code_at_offset(secret, clock, -1)) is False

    def test_malformed_codes_are_refused(self, engine, account, enrolled):
        assert engine.verify(account.id, "abc") is False
        assert engine.verify(account.id, "12345") is False
        assert engine.verify(account.id, "") is False

    def test_verify_without_two_factor(self, engine, account):
        assert engine.verify(account.id, "123456") is False


class TestBackupCodes:
    """Tests for the backup-code lifecycle."""

    def test_backup_code_is_single_use(self, engine, account, enrolled):
        """The same backup code works exactly once."""
        _, codes = enrolled

        assert engine.verify(account.id, codes[0], is_backup_code=True) is True
        assert engine.verify(account.id, codes[0], is_backup_code=True) is False
        assert engine.verify(account.id, codes[1], is_backup_code=True) is True

    def test_backup_code_is_case_insensitive(self, engine, account, enrolled):
        _, codes = enrolled
        assert engine.verify(account.id, codes[0].lower(), is_backup_code=True) is True

    def test_unknown_backup_code(self, engine, account, enrolled):
        assert engine.verify(account.id, "FFFFFFFF0", is_backup_code=True) is False

    def test_status_masks_codes(self, engine, account, enrolled):
        """Status never returns plaintext codes."""
        _, codes = enrolled
        engine.verify(account.id, codes[0], is_backup_code=True)

        status = engine.backup_code_status(account.id)

        assert status["total"] == 10
        assert status["used"] == 1
        assert status["unused"] == 9
        assert all(masked.startswith("******") for masked in status["backupCodes"])
        assert not set(status["backupCodes"]) & set(codes)

    def test_regenerate_requires_password(self, engine, account, enrolled):
        with pytest.raises(InvalidPasswordError):
            engine.regenerate(account.id, "wrong")

    def test_regenerate_invalidates_old_codes(self, engine, account, enrolled):
        """Old codes stop working once a new set is issued."""
        _, old_codes = enrolled

        new_codes = engine.regenerate(account.id, PASSWORD)

        assert len(new_codes) == 10
        assert engine.verify(account.id, old_codes[0], is_backup_code=True) is False
        assert engine.verify(account.id, new_codes[0], is_backup_code=True) is True


class TestDisable:
    """Tests for disabling 2FA."""

    def test_disable_requires_password(self, engine, account, enrolled, store):
        with pytest.raises(InvalidPasswordError):
            engine.disable(account.id, "wrong")
        assert store.get_account(account.id).two_factor_enabled is True

    def test_disable_clears_secret_and_codes(self, engine, account, enrolled, store, clock):
        secret, codes = enrolled

        engine.disable(account.id, PASSWORD)

        stored = store.get_account(account.id)
        assert stored.two_factor_enabled is False
        assert stored.two_factor_secret is None
        assert stored.backup_codes == []
        assert engine.verify(account.id, codes[0], is_backup_code=True) is False

    def test_disable_when_not_enabled(self, engine, account):
        with pytest.raises(BadRequestError):
            engine.disable(account.id, PASSWORD)
