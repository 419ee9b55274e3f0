from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from admauth.logging import get_logger
from admauth.storage.common import (
    backup_code_matches,
    build_secret_cipher,
    decrypt_secret,
    deserialize_backup_codes,
    deserialize_device_info,
    deserialize_security,
    deserialize_session_config,
    encrypt_secret,
    format_datetime,
    normalize_email,
    parse_datetime,
    serialize_backup_codes,
    serialize_device_info,
    serialize_security,
    serialize_session_config,
)
from admauth.storage.errors import ConstraintViolation
from admauth.storage.models import (
    Account,
    BackupCode,
    LockoutState,
    LoginHistoryEntry,
    Rank,
    Session,
    SessionConfig,
    utcnow,
)


# The snapshot is rewritten on every mutation, so the history it carries is
# bounded; Postgres keeps the full history
MAX_SNAPSHOT_HISTORY = 10_000


class MemoryStore:
    """In-process store with a JSON snapshot for development and tests.

    Every read-modify-write runs under one re-entrant lock, which makes
    lockout transitions and session cap enforcement linearizable per process.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/admauth",
        *,
        mfa_encryption_key: str | None = None,
        history_limit: int = MAX_SNAPSHOT_HISTORY,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_history: List[LoginHistoryEntry] = []
        self.history_limit = history_limit
        self.session_config: Optional[SessionConfig] = None
        # Re-entrant so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = build_secret_cipher(mfa_encryption_key, self.fs_root)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # accounts
    def _public_account(self, account: Account) -> Account:
        public = account.copy()
        public.two_factor_secret = decrypt_secret(self._cipher, account.two_factor_secret)
        return public

    def create_account(
        self, name: str, email: str, password_hash: str, rank: Rank = Rank.WERKNEMER
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(a.email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                name=name,
                email=normalized,
                password_hash=password_hash,
                rank=Rank.parse(rank),
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return self._public_account(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._public_account(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return self._public_account(account)
        return None

    def list_accounts(self, ranks: Optional[Iterable[Rank]] = None) -> List[Account]:
        allowed = set(ranks) if ranks is not None else None
        with self._data_lock:
            selected = [
                a
                for a in self.accounts.values()
                if allowed is None or a.rank in allowed
            ]
            selected.sort(key=lambda a: a.created_at)
            return [self._public_account(a) for a in selected]

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self.accounts)

    def update_account(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        rank: Optional[Rank] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if email is not None:
                normalized = normalize_email(email)
                if any(
                    a.email == normalized and a.id != account_id
                    for a in self.accounts.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                account.email = normalized
            if name is not None:
                account.name = name
            if rank is not None:
                account.rank = Rank.parse(rank)
            if password_hash is not None:
                account.password_hash = password_hash
            account.updated_at = utcnow()
            self._persist_state()
            return self._public_account(account)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.accounts.pop(account_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    def update_lockout(
        self,
        account_id: str,
        transition: Callable[[LockoutState], LockoutState],
    ) -> Optional[LockoutState]:
        """Apply ``transition`` to the account's lockout counters atomically."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.lockout = transition(account.lockout)
            self._persist_state()
            return account.lockout

    # two-factor
    def set_two_factor_secret(self, account_id: str, secret: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.two_factor_secret = encrypt_secret(self._cipher, secret)
            account.two_factor_enabled = False
            account.last_totp_step = None
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def enable_two_factor(self, account_id: str, backup_codes: List[BackupCode]) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or not account.two_factor_secret:
                return False
            account.two_factor_enabled = True
            account.backup_codes = [replace(c) for c in backup_codes]
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def disable_two_factor(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.two_factor_secret = None
            account.two_factor_enabled = False
            account.backup_codes = []
            account.last_totp_step = None
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def replace_backup_codes(self, account_id: str, backup_codes: List[BackupCode]) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.backup_codes = [replace(c) for c in backup_codes]
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def consume_backup_code(self, account_id: str, code: str, now: datetime) -> bool:
        """Mark the first unused matching backup code as used."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            for backup in account.backup_codes:
                if backup_code_matches(backup, code):
                    backup.used = True
                    backup.used_at = now
                    self._persist_state()
                    return True
            return False

    def claim_totp_step(self, account_id: str, step: int) -> bool:
        """Record ``step`` as consumed if it is newer than the last accepted one."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            if account.last_totp_step is not None and step <= account.last_totp_step:
                return False
            account.last_totp_step = step
            self._persist_state()
            return True

    # sessions
    def create_session(
        self,
        session: Session,
        *,
        max_active: Optional[int] = None,
        evict_oldest: bool = True,
        now: Optional[datetime] = None,
    ) -> List[Session]:
        """Insert ``session``; returns sessions evicted to respect ``max_active``."""
        now = now or utcnow()
        with self._data_lock:
            if session.user_id not in self.accounts:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if any(
                s.credential_token == session.credential_token and s.is_active
                for s in self.sessions.values()
            ):
                raise ConstraintViolation("credential token already bound to a session")
            evicted: List[Session] = []
            if max_active:
                live = sorted(
                    (
                        s
                        for s in self.sessions.values()
                        if s.user_id == session.user_id and s.is_live(now)
                    ),
                    key=lambda s: s.last_activity,
                )
                overflow = len(live) - max_active + 1
                if overflow > 0:
                    if not evict_oldest:
                        raise ConstraintViolation(
                            "active session limit reached",
                            {"maxActiveSessions": max_active},
                        )
                    for stale in live[:overflow]:
                        stale.is_active = False
                        stale.logout_time = now
                        stale.logout_reason = "session_limit"
                        evicted.append(replace(stale))
            self.sessions[session.session_token] = replace(session)
            self._persist_state()
            return evicted

    def get_session(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            return replace(sess) if sess else None

    def get_session_by_credential(self, credential_token: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.credential_token == credential_token and sess.is_active:
                    return replace(sess)
        return None

    def touch_session(self, session_token: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess or not sess.is_active:
                return False
            sess.last_activity = now
            self._persist_state()
            return True

    def deactivate_session(
        self, session_token: str, reason: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess or not sess.is_active:
                return None
            sess.is_active = False
            sess.logout_time = now
            sess.logout_reason = reason
            self._persist_state()
            return replace(sess)

    def deactivate_user_sessions(
        self,
        user_id: str,
        reason: str,
        now: datetime,
        *,
        except_token: Optional[str] = None,
    ) -> List[Session]:
        with self._data_lock:
            closed: List[Session] = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_token and sess.session_token == except_token:
                    continue
                sess.is_active = False
                sess.logout_time = now
                sess.logout_reason = reason
                closed.append(replace(sess))
            if closed:
                self._persist_state()
            return closed

    def expire_sessions(self, now: datetime) -> List[Session]:
        with self._data_lock:
            expired: List[Session] = []
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at <= now:
                    sess.is_active = False
                    sess.logout_time = now
                    sess.logout_reason = "token_expired"
                    expired.append(replace(sess))
            if expired:
                self._persist_state()
            return expired

    def list_sessions(
        self,
        *,
        user_ids: Optional[Iterable[str]] = None,
        active_only: bool = False,
    ) -> List[Session]:
        allowed = set(user_ids) if user_ids is not None else None
        with self._data_lock:
            selected = [
                replace(s)
                for s in self.sessions.values()
                if (allowed is None or s.user_id in allowed)
                and (not active_only or s.is_active)
            ]
        selected.sort(key=lambda s: s.last_activity, reverse=True)
        return selected

    # login history
    def append_login_history(self, entry: LoginHistoryEntry) -> None:
        with self._data_lock:
            self.login_history.append(entry)
            overflow = len(self.login_history) - self.history_limit
            if overflow > 0:
                del self.login_history[:overflow]
            self._persist_state()

    def list_login_history(
        self,
        *,
        email: Optional[str] = None,
        user_ids: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
    ) -> List[LoginHistoryEntry]:
        normalized = normalize_email(email) if email is not None else None
        allowed = set(user_ids) if user_ids is not None else None
        with self._data_lock:
            selected = [
                e
                for e in self.login_history
                if (normalized is None or normalize_email(e.email) == normalized)
                and (allowed is None or e.user_id in allowed)
                and (since is None or e.timestamp >= since)
                and (success is None or e.success == success)
            ]
        selected.sort(key=lambda e: e.timestamp, reverse=True)
        return selected

    # session config
    def get_session_config(self) -> Optional[SessionConfig]:
        with self._data_lock:
            return replace(self.session_config) if self.session_config else None

    def save_session_config(self, config: SessionConfig) -> SessionConfig:
        with self._data_lock:
            self.session_config = replace(config)
            self._persist_state()
            return replace(config)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "login_history": [self._serialize_history(e) for e in self.login_history],
            "session_config": (
                serialize_session_config(self.session_config)
                if self.session_config
                else None
            ),
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["session_token"]: self._deserialize_session(s)
            for s in data.get("sessions", [])
        }
        self.login_history = [
            self._deserialize_history(e) for e in data.get("login_history", [])
        ]
        raw_config = data.get("session_config")
        self.session_config = deserialize_session_config(raw_config) if raw_config else None
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
            history=len(self.login_history),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        lockout = account.lockout
        return {
            "id": account.id,
            "name": account.name,
            "email": account.email,
            "password_hash": account.password_hash,
            "rank": account.rank.value,
            "two_factor_secret": account.two_factor_secret,
            "two_factor_enabled": account.two_factor_enabled,
            "backup_codes": serialize_backup_codes(account.backup_codes),
            "last_totp_step": account.last_totp_step,
            "lockout": {
                "failed_count": lockout.failed_count,
                "total_attempts": lockout.total_attempts,
                "last_failed_attempt": format_datetime(lockout.last_failed_attempt),
                "locked_until": format_datetime(lockout.locked_until),
            },
            "created_at": format_datetime(account.created_at),
            "updated_at": format_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        lockout = data.get("lockout") or {}
        return Account(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            password_hash=data["password_hash"],
            rank=Rank.parse(data.get("rank", Rank.WERKNEMER.value)),
            two_factor_secret=data.get("two_factor_secret"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            backup_codes=deserialize_backup_codes(data.get("backup_codes")),
            last_totp_step=data.get("last_totp_step"),
            lockout=LockoutState(
                failed_count=int(lockout.get("failed_count", 0)),
                total_attempts=int(lockout.get("total_attempts", 0)),
                last_failed_attempt=parse_datetime(lockout.get("last_failed_attempt")),
                locked_until=parse_datetime(lockout.get("locked_until")),
            ),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "session_token": session.session_token,
            "credential_token": session.credential_token,
            "user_id": session.user_id,
            "created_at": format_datetime(session.created_at),
            "last_activity": format_datetime(session.last_activity),
            "expires_at": format_datetime(session.expires_at),
            "is_active": session.is_active,
            "logout_time": format_datetime(session.logout_time),
            "logout_reason": session.logout_reason,
            "ip_address": session.ip_address,
            "device_info": serialize_device_info(session.device_info),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            session_token=data["session_token"],
            credential_token=data["credential_token"],
            user_id=data["user_id"],
            created_at=parse_datetime(data["created_at"]),
            last_activity=parse_datetime(data.get("last_activity") or data["created_at"]),
            expires_at=parse_datetime(data["expires_at"]),
            is_active=bool(data.get("is_active", True)),
            logout_time=parse_datetime(data.get("logout_time")),
            logout_reason=data.get("logout_reason"),
            ip_address=data.get("ip_address"),
            device_info=deserialize_device_info(data.get("device_info")),
        )

    def _serialize_history(self, entry: LoginHistoryEntry) -> dict:
        return {
            "id": entry.id,
            "email": entry.email,
            "user_id": entry.user_id,
            "success": entry.success,
            "failure_reason": entry.failure_reason,
            "session_token": entry.session_token,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "timestamp": format_datetime(entry.timestamp),
            "device_info": serialize_device_info(entry.device_info),
            "security": serialize_security(entry.security),
        }

    def _deserialize_history(self, data: dict) -> LoginHistoryEntry:
        return LoginHistoryEntry(
            id=data["id"],
            email=data.get("email", ""),
            user_id=data.get("user_id"),
            success=bool(data.get("success", False)),
            failure_reason=data.get("failure_reason"),
            session_token=data.get("session_token"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            timestamp=parse_datetime(data["timestamp"]),
            device_info=deserialize_device_info(data.get("device_info")),
            security=deserialize_security(data.get("security")),
        )
