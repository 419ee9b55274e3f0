from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from admauth.config import Settings
from admauth.logging import get_logger
from admauth.service.client_info import RequestMeta
from admauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    InvalidTwoFactorCodeError,
    NotFoundError,
    SessionExpiredError,
)
from admauth.service.lockout import LockoutPolicy
from admauth.service.passwords import PasswordManager, normalize_password
from admauth.service.risk import assess_login
from admauth.service.sessions import SessionRegistry, session_expiry
from admauth.service.tokens import CredentialTokenCodec
from admauth.service.two_factor import TwoFactorEngine
from admauth.storage.common import normalize_email
from admauth.storage.models import (
    Account,
    LoginHistoryEntry,
    Rank,
    Session,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class AuthContext:
    account: Account
    session: Session

    @property
    def user_id(self) -> str:
        return self.account.id

    @property
    def rank(self) -> Rank:
        return self.account.rank


@dataclass
class LoginResult:
    user_id: str
    requires_two_factor: bool = False
    token: Optional[str] = None
    session: Optional[Session] = None
    account: Optional[Account] = None


class AuthService:
    """Login state machine: credentials, lockout, optional second factor,
    credential issuance.

    ``login`` either issues a credential token plus session, or, for
    accounts with two-factor enabled, records a pending challenge that
    ``verify_two_factor`` must redeem. Every attempt is written to the login
    history; a failed history write is logged and never fails the login.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        sessions: SessionRegistry,
        two_factor: TwoFactorEngine,
        passwords: PasswordManager,
        lockout: LockoutPolicy,
        tokens: CredentialTokenCodec,
        cache=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.sessions = sessions
        self.two_factor = two_factor
        self.passwords = passwords
        self.lockout = lockout
        self.tokens = tokens
        self.cache = cache
        self.clock = clock or utcnow
        self._state_lock = threading.Lock()
        # In-process pending 2FA challenges when Redis is unavailable
        self._challenges: Dict[str, datetime] = {}

    # pending two-factor challenges
    async def _open_challenge(self, user_id: str) -> None:
        ttl = self.settings.two_factor_challenge_ttl_seconds
        if self.cache is not None:
            await self.cache.set_two_factor_challenge(user_id, ttl)
            return
        with self._state_lock:
            self._challenges[user_id] = self.clock() + timedelta(seconds=ttl)

    async def _has_challenge(self, user_id: str) -> bool:
        if self.cache is not None:
            return await self.cache.has_two_factor_challenge(user_id)
        now = self.clock()
        with self._state_lock:
            expires_at = self._challenges.get(user_id)
            if expires_at is None:
                return False
            if expires_at <= now:
                self._challenges.pop(user_id, None)
                return False
            return True

    async def _close_challenge(self, user_id: str) -> None:
        if self.cache is not None:
            await self.cache.clear_two_factor_challenge(user_id)
            return
        with self._state_lock:
            self._challenges.pop(user_id, None)

    # login history
    def _record_attempt(
        self,
        email: str,
        meta: RequestMeta,
        *,
        success: bool,
        account: Optional[Account] = None,
        failure_reason: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> Optional[LoginHistoryEntry]:
        now = self.clock()
        try:
            config = self.sessions.get_config()
            ip_address = meta.ip_address if config.enforce_location_tracking else None
            security = assess_login(
                self.store,
                email,
                ip_address=ip_address,
                user_agent=meta.user_agent,
                now=now,
                detect=config.enable_suspicious_activity_detection,
            )
            entry = LoginHistoryEntry(
                id=str(uuid.uuid4()),
                email=email,
                user_id=account.id if account else None,
                success=success,
                failure_reason=failure_reason,
                session_token=session_token,
                ip_address=ip_address,
                user_agent=meta.user_agent,
                timestamp=now,
                device_info=meta.device_info,
                security=security,
            )
            self.store.append_login_history(entry)
        except Exception as exc:
            logger.error(
                "login_history_write_failed",
                error=str(exc),
                failure_reason=failure_reason,
            )
            return None
        if security.is_suspicious_activity:
            logger.warning(
                "suspicious_login_detected",
                user_id=entry.user_id,
                reasons=security.suspicious_reasons,
                risk_score=security.risk_score,
            )
        return entry

    # state machine
    async def login(
        self, email: str, password: str, meta: Optional[RequestMeta] = None
    ) -> LoginResult:
        meta = meta or RequestMeta()
        email = normalize_email(email or "")
        password = normalize_password(password)
        now = self.clock()

        account = self.store.get_account_by_email(email)
        if account is None:
            self._record_attempt(email, meta, success=False, failure_reason="user_not_found")
            logger.info("login_user_not_found")
            raise NotFoundError("User not found")

        decision = self.lockout.evaluate(account.lockout, now)
        if decision.locked:
            self._record_attempt(
                email, meta, success=False, account=account, failure_reason="account_locked"
            )
            logger.warning(
                "login_rejected_locked",
                user_id=account.id,
                remaining_seconds=decision.remaining_seconds,
            )
            raise AccountLockedError(decision.remaining_seconds)

        if not password or not self.passwords.verify(account.password_hash, password):
            state = self.store.update_lockout(
                account.id, lambda s: self.lockout.register_failure(s, now)
            )
            self._record_attempt(
                email,
                meta,
                success=False,
                account=account,
                failure_reason="invalid_credentials",
            )
            after = self.lockout.evaluate(state, now)
            if after.locked:
                logger.warning(
                    "account_locked",
                    user_id=account.id,
                    total_attempts=state.total_attempts,
                    remaining_seconds=after.remaining_seconds,
                )
                raise AccountLockedError(after.remaining_seconds)
            logger.info(
                "login_invalid_credentials",
                user_id=account.id,
                failed_attempts=state.failed_count,
            )
            raise AuthenticationError(
                "Invalid credentials",
                detail={
                    "failedAttempts": state.failed_count,
                    "maxAttempts": self.lockout.threshold,
                },
            )

        if self.passwords.needs_rehash(account.password_hash):
            self.store.update_account(account.id, password_hash=self.passwords.hash(password))
            logger.info("password_rehashed", user_id=account.id)

        if account.two_factor_enabled:
            await self._open_challenge(account.id)
            logger.info("two_factor_challenge_issued", user_id=account.id)
            return LoginResult(user_id=account.id, requires_two_factor=True)

        return await self._complete(account, meta)

    async def verify_two_factor(
        self,
        user_id: str,
        code: str,
        *,
        is_backup_code: bool = False,
        meta: Optional[RequestMeta] = None,
    ) -> LoginResult:
        meta = meta or RequestMeta()
        if not user_id or not await self._has_challenge(user_id):
            logger.warning("two_factor_without_challenge", user_id=user_id)
            raise InvalidTwoFactorCodeError("Invalid verification code")
        account = self.store.get_account(user_id)
        if account is None:
            raise NotFoundError("User not found")
        decision = self.lockout.evaluate(account.lockout, self.clock())
        if decision.locked:
            raise AccountLockedError(decision.remaining_seconds)
        if not self.two_factor.verify(account.id, code, is_backup_code):
            self._record_attempt(
                account.email, meta, success=False, account=account, failure_reason="2fa_failed"
            )
            logger.warning(
                "two_factor_verification_failed",
                user_id=account.id,
                backup=is_backup_code,
            )
            raise InvalidTwoFactorCodeError("Invalid verification code")
        await self._close_challenge(account.id)
        return await self._complete(account, meta)

    async def _complete(self, account: Account, meta: RequestMeta) -> LoginResult:
        config = self.sessions.get_config()
        now = self.clock()
        session_token = self.sessions.new_session_token()
        credential = self.tokens.issue(
            account.id,
            session_token,
            issued_at=now,
            expires_at=session_expiry(config, now),
        )
        # The credentials were correct, so the failure cycle ends even when
        # no session can be opened
        self.store.update_lockout(account.id, self.lockout.register_success)
        try:
            session = await self.sessions.create(
                account.id, credential, meta, session_token=session_token, config=config
            )
        except ConflictError:
            self._record_attempt(
                account.email, meta, success=False, account=account, failure_reason="session_limit"
            )
            logger.warning("login_rejected_session_limit", user_id=account.id)
            raise
        except Exception as exc:
            self._record_attempt(
                account.email, meta, success=False, account=account, failure_reason="server_error"
            )
            logger.error("login_session_create_failed", user_id=account.id, error=str(exc))
            raise
        entry = self._record_attempt(
            account.email,
            meta,
            success=True,
            account=account,
            session_token=session.session_token,
        )
        if (
            entry is not None
            and entry.security.is_suspicious_activity
            and config.auto_logout_on_suspicious_activity
        ):
            await self.sessions.invalidate_user(
                account.id, reason="force_logout", except_token=session.session_token
            )
        logger.info("login_succeeded", user_id=account.id, session_token=session.session_token)
        return LoginResult(
            user_id=account.id,
            token=credential,
            session=session,
            account=self.store.get_account(account.id) or account,
        )

    # request authentication
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    async def resolve(self, token: Optional[str]) -> Optional[AuthContext]:
        """Resolve a raw credential token without raising."""
        session = await self.sessions.validate(token or "")
        if session is None:
            return None
        account = self.store.get_account(session.user_id)
        if account is None:
            return None
        return AuthContext(account=account, session=session)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Authentication required")
        ctx = await self.resolve(token)
        if ctx is None:
            raise SessionExpiredError("Session expired or revoked")
        self.sessions.touch(ctx.session.session_token)
        return ctx

    async def logout(self, ctx: AuthContext) -> Session:
        closed = await self.sessions.invalidate(ctx.session.session_token, reason="manual")
        logger.info("logout", user_id=ctx.user_id)
        return closed

    # history queries
    def login_history(
        self,
        visible_ranks: Iterable[Rank],
        *,
        email: Optional[str] = None,
        user_id: Optional[str] = None,
        success: Optional[bool] = None,
        days: int = 30,
        include_unknown: bool = False,
    ) -> List[LoginHistoryEntry]:
        visible_ids = {a.id for a in self.store.list_accounts(ranks=visible_ranks)}
        if user_id is not None:
            visible_ids &= {user_id}
        entries = self.store.list_login_history(
            email=email, since=self.clock() - timedelta(days=days), success=success
        )
        return [
            e
            for e in entries
            if e.user_id in visible_ids
            or (include_unknown and e.user_id is None and user_id is None)
        ]


def history_statistics(entries: List[LoginHistoryEntry]) -> dict:
    successful = sum(1 for e in entries if e.success)
    return {
        "total": len(entries),
        "successful": successful,
        "failed": len(entries) - successful,
        "suspicious": sum(1 for e in entries if e.security.is_suspicious_activity),
        "unique_ips": len({e.ip_address for e in entries if e.ip_address}),
    }


__all__ = [
    "AuthContext",
    "AuthService",
    "LoginResult",
    "history_statistics",
]
