from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from admauth.config import Settings
from admauth.logging import get_logger
from admauth.service.errors import (
    BadRequestError,
    InvalidPasswordError,
    InvalidTwoFactorCodeError,
    NotFoundError,
)
from admauth.service.passwords import PasswordManager
from admauth.storage.models import Account, BackupCode, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_BYTES = 4


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    qr_payload: str


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 TOTP (HMAC-SHA1) for a base32 ``secret`` at ``timestamp``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def _mask_code(code: str) -> str:
    # Plaintext codes are shown once, at issue time
    return "*" * (len(code) - 2) + code[-2:]


def generate_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode().rstrip("=")


def generate_backup_codes(count: int) -> List[str]:
    return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(count)]


class TwoFactorEngine:
    """TOTP enrollment and verification plus the backup-code lifecycle.

    TOTP codes are accepted within ``window`` steps either side of the
    current step. Each accepted step is claimed in the store, so a code can
    never be replayed and older steps are refused once a newer one was used.
    Failures here never touch the login lockout counters.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        passwords: PasswordManager,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.window = settings.totp_window
        self.clock = clock or utcnow

    def _require_account(self, user_id: str) -> Account:
        account = self.store.get_account(user_id)
        if not account:
            raise NotFoundError("User not found")
        return account

    def _check_password(self, account: Account, password: str) -> None:
        if not password or not self.passwords.verify(account.password_hash, password):
            logger.warning("two_factor_password_recheck_failed", user_id=account.id)
            raise InvalidPasswordError("Invalid password")

    def _otpauth_uri(self, account: Account, secret: str) -> str:
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{account.email}")
        query = urlencode({"secret": secret, "issuer": issuer})
        return f"otpauth://totp/{label}?{query}"

    def _matching_step(self, secret: str, code: str) -> Optional[int]:
        now = self.clock().timestamp()
        current = int(now // TOTP_INTERVAL)
        for offset in range(-self.window, self.window + 1):
            step = current + offset
            generated = generate_totp(secret, step * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, code):
                return step
        return None

    def _accept_totp(self, account: Account, code: str) -> bool:
        secret = account.two_factor_secret
        normalized = (code or "").replace(" ", "").strip()
        if not secret or not normalized.isdigit() or len(normalized) != TOTP_DIGITS:
            return False
        step = self._matching_step(secret, normalized)
        if step is None:
            return False
        if not self.store.claim_totp_step(account.id, step):
            logger.warning("totp_step_replayed", user_id=account.id, step=step)
            return False
        return True

    def _issue_backup_codes(self) -> tuple[List[str], List[BackupCode]]:
        plain = generate_backup_codes(self.settings.backup_code_count)
        return plain, [BackupCode(code=c) for c in plain]

    def setup(self, user_id: str) -> TwoFactorEnrollment:
        account = self._require_account(user_id)
        if account.two_factor_enabled:
            raise BadRequestError("2FA is already enabled")
        secret = generate_secret()
        self.store.set_two_factor_secret(account.id, secret)
        logger.info("two_factor_setup_started", user_id=account.id)
        return TwoFactorEnrollment(secret=secret, qr_payload=self._otpauth_uri(account, secret))

    def confirm(self, user_id: str, code: str) -> List[str]:
        account = self._require_account(user_id)
        if account.two_factor_enabled:
            raise BadRequestError("2FA is already enabled")
        if not account.two_factor_secret:
            raise BadRequestError("2FA setup not initiated")
        if not self._accept_totp(account, code):
            logger.warning("two_factor_confirm_failed", user_id=account.id)
            raise InvalidTwoFactorCodeError("Invalid verification code")
        plain, codes = self._issue_backup_codes()
        self.store.enable_two_factor(account.id, codes)
        logger.info("two_factor_enabled", user_id=account.id, backup_codes=len(codes))
        return plain

    def verify(self, user_id: str, code: str, is_backup_code: bool = False) -> bool:
        account = self.store.get_account(user_id)
        if not account or not account.two_factor_enabled:
            return False
        if is_backup_code:
            normalized = (code or "").strip().upper()
            if not normalized:
                return False
            used = self.store.consume_backup_code(account.id, normalized, self.clock())
            if used:
                remaining = sum(1 for c in account.backup_codes if not c.used) - 1
                logger.info("backup_code_consumed", user_id=account.id, remaining=remaining)
            return used
        return self._accept_totp(account, code)

    def regenerate(self, user_id: str, password: str) -> List[str]:
        account = self._require_account(user_id)
        self._check_password(account, password)
        if not account.two_factor_enabled:
            raise BadRequestError("2FA is not enabled")
        plain, codes = self._issue_backup_codes()
        self.store.replace_backup_codes(account.id, codes)
        logger.info("backup_codes_regenerated", user_id=account.id)
        return plain

    def disable(self, user_id: str, password: str) -> None:
        account = self._require_account(user_id)
        self._check_password(account, password)
        if not account.two_factor_enabled and not account.two_factor_secret:
            raise BadRequestError("2FA is not enabled")
        self.store.disable_two_factor(account.id)
        logger.info("two_factor_disabled", user_id=account.id)

    def backup_code_status(self, user_id: str) -> dict:
        account = self._require_account(user_id)
        if not account.two_factor_enabled:
            raise BadRequestError("2FA is not enabled")
        unused = [c for c in account.backup_codes if not c.used]
        return {
            "backupCodes": [_mask_code(c.code) for c in unused],
            "total": len(account.backup_codes),
            "unused": len(unused),
            "used": len(account.backup_codes) - len(unused),
        }
