from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS admin_account (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        rank TEXT NOT NULL,
        two_factor_secret TEXT,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        backup_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
        last_totp_step BIGINT,
        failed_count INTEGER NOT NULL DEFAULT 0,
        total_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_attempt TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_session (
        session_token TEXT PRIMARY KEY,
        credential_token TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES admin_account(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        logout_time TIMESTAMPTZ,
        logout_reason TEXT,
        ip_address TEXT,
        device_info JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_session_user_active_idx ON user_session (user_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS login_history (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        user_id TEXT,
        success BOOLEAN NOT NULL,
        failure_reason TEXT,
        session_token TEXT,
        ip_address TEXT,
        user_agent TEXT,
        device_info JSONB,
        security JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_history_email_idx ON login_history (email, created_at)",
    "CREATE INDEX IF NOT EXISTS login_history_user_idx ON login_history (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS session_config (
        id SMALLINT PRIMARY KEY DEFAULT 1,
        config JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed account, session and login-history store.

    Lockout transitions and session-cap checks run inside a transaction that
    holds the account row lock (``SELECT ... FOR UPDATE``).
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_secret_cipher(mfa_encryption_key, self.fs_root)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # accounts
    def _row_to_account(self, row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            rank=Rank.parse(row["rank"]),
            two_factor_secret=decrypt_secret(self._cipher, row.get("two_factor_secret")),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            backup_codes=deserialize_backup_codes(row.get("backup_codes")),
            last_totp_step=row.get("last_totp_step"),
            lockout=self._row_to_lockout(row),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            updated_at=parse_datetime(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _row_to_lockout(row: dict) -> LockoutState:
        return LockoutState(
            failed_count=int(row.get("failed_count") or 0),
            total_attempts=int(row.get("total_attempts") or 0),
            last_failed_attempt=parse_datetime(row.get("last_failed_attempt")),
            locked_until=parse_datetime(row.get("locked_until")),
        )

    def create_account(
        self, name: str, email: str, password_hash: str, rank: Rank = Rank.WERKNEMER
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_account (id, name, email, password_hash, rank)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, name, normalize_email(email), password_hash, Rank.parse(rank).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, ranks: Optional[Iterable[Rank]] = None) -> List[Account]:
        with self._connect() as conn:
            if ranks is None:
                rows = conn.execute(
                    "SELECT * FROM admin_account ORDER BY created_at"
                ).fetchall()
            else:
                labels = [Rank.parse(r).value for r in ranks]
                rows = conn.execute(
                    "SELECT * FROM admin_account WHERE rank = ANY(%s) ORDER BY created_at",
                    (labels,),
                ).fetchall()
        return [self._row_to_account(r) for r in rows]

    def count_accounts(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM admin_account").fetchone()
        return int(row["n"]) if row else 0

    def update_account(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        rank: Optional[Rank] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[Account]:
        assignments: list[str] = []
        params: list[Any] = []
        if name is not None:
            assignments.append("name = %s")
            params.append(name)
        if email is not None:
            assignments.append("email = %s")
            params.append(normalize_email(email))
        if rank is not None:
            assignments.append("rank = %s")
            params.append(Rank.parse(rank).value)
        if password_hash is not None:
            assignments.append("password_hash = %s")
            params.append(password_hash)
        assignments.append("updated_at = now()")
        params.append(account_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE admin_account SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM admin_account WHERE id = %s", (account_id,))
            return result.rowcount > 0

    def update_lockout(
        self,
        account_id: str,
        transition: Callable[[LockoutState], LockoutState],
    ) -> Optional[LockoutState]:
        """Apply ``transition`` under the account row lock."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    SELECT failed_count, total_attempts, last_failed_attempt, locked_until
                    FROM admin_account WHERE id = %s FOR UPDATE
                    """,
                    (account_id,),
                ).fetchone()
                if not row:
                    return None
                updated = transition(self._row_to_lockout(row))
                conn.execute(
                    """
                    UPDATE admin_account
                    SET failed_count = %s, total_attempts = %s,
                        last_failed_attempt = %s, locked_until = %s
                    WHERE id = %s
                    """,
                    (
                        updated.failed_count,
                        updated.total_attempts,
                        updated.last_failed_attempt,
                        updated.locked_until,
                        account_id,
                    ),
                )
        return updated

    # two-factor
    def set_two_factor_secret(self, account_id: str, secret: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE admin_account
                SET two_factor_secret = %s, two_factor_enabled = FALSE,
                    last_totp_step = NULL, updated_at = now()
                WHERE id = %s
                """,
                (encrypt_secret(self._cipher, secret), account_id),
            )
            return result.rowcount > 0

    def enable_two_factor(self, account_id: str, backup_codes: List[BackupCode]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE admin_account
                SET two_factor_enabled = TRUE, backup_codes = %s::jsonb, updated_at = now()
                WHERE id = %s AND two_factor_secret IS NOT NULL
                """,
                (json.dumps(serialize_backup_codes(backup_codes)), account_id),
            )
            return result.rowcount > 0

    def disable_two_factor(self, account_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE admin_account
                SET two_factor_secret = NULL, two_factor_enabled = FALSE,
                    backup_codes = '[]'::jsonb, last_totp_step = NULL, updated_at = now()
                WHERE id = %s
                """,
                (account_id,),
            )
            return result.rowcount > 0

    def replace_backup_codes(self, account_id: str, backup_codes: List[BackupCode]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE admin_account SET backup_codes = %s::jsonb, updated_at = now() WHERE id = %s",
                (json.dumps(serialize_backup_codes(backup_codes)), account_id),
            )
            return result.rowcount > 0

    def consume_backup_code(self, account_id: str, code: str, now: datetime) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT backup_codes FROM admin_account WHERE id = %s FOR UPDATE",
                    (account_id,),
                ).fetchone()
                if not row:
                    return False
                codes = deserialize_backup_codes(row.get("backup_codes"))
                match = next((c for c in codes if backup_code_matches(c, code)), None)
                if match is None:
                    return False
                match.used = True
                match.used_at = now
                conn.execute(
                    "UPDATE admin_account SET backup_codes = %s::jsonb WHERE id = %s",
                    (json.dumps(serialize_backup_codes(codes)), account_id),
                )
        return True

    def claim_totp_step(self, account_id: str, step: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE admin_account SET last_totp_step = %s
                WHERE id = %s AND (last_totp_step IS NULL OR last_totp_step < %s)
                """,
                (step, account_id, step),
            )
            return result.rowcount > 0

    # sessions
    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            session_token=row["session_token"],
            credential_token=row["credential_token"],
            user_id=str(row["user_id"]),
            created_at=parse_datetime(row["created_at"]),
            last_activity=parse_datetime(row["last_activity"]),
            expires_at=parse_datetime(row["expires_at"]),
            is_active=bool(row["is_active"]),
            logout_time=parse_datetime(row.get("logout_time")),
            logout_reason=row.get("logout_reason"),
            ip_address=row.get("ip_address"),
            device_info=deserialize_device_info(row.get("device_info")),
        )

    def create_session(
        self,
        session: Session,
        *,
        max_active: Optional[int] = None,
        evict_oldest: bool = True,
        now: Optional[datetime] = None,
    ) -> List[Session]:
        now = now or utcnow()
        evicted: List[Session] = []
        try:
            with self._connect() as conn:
                with conn.transaction():
                    owner = conn.execute(
                        "SELECT id FROM admin_account WHERE id = %s FOR UPDATE",
                        (session.user_id,),
                    ).fetchone()
                    if not owner:
                        raise ConstraintViolation(
                            "session user missing", {"user_id": session.user_id}
                        )
                    if max_active:
                        live = conn.execute(
                            """
                            SELECT * FROM user_session
                            WHERE user_id = %s AND is_active AND expires_at > %s
                            ORDER BY last_activity ASC
                            """,
                            (session.user_id, now),
                        ).fetchall()
                        overflow = len(live) - max_active + 1
                        if overflow > 0:
                            if not evict_oldest:
                                raise ConstraintViolation(
                                    "active session limit reached",
                                    {"maxActiveSessions": max_active},
                                )
                            tokens = [r["session_token"] for r in live[:overflow]]
                            rows = conn.execute(
                                """
                                UPDATE user_session
                                SET is_active = FALSE, logout_time = %s, logout_reason = 'session_limit'
                                WHERE session_token = ANY(%s)
                                RETURNING *
                                """,
                                (now, tokens),
                            ).fetchall()
                            evicted = [self._row_to_session(r) for r in rows]
                    conn.execute(
                        """
                        INSERT INTO user_session (session_token, credential_token, user_id, created_at,
                            last_activity, expires_at, is_active, ip_address, device_info)
                        VALUES (%s, %s, %s, %s, %s, %s, TRUE, %s, %s::jsonb)
                        """,
                        (
                            session.session_token,
                            session.credential_token,
                            session.user_id,
                            session.created_at,
                            session.last_activity,
                            session.expires_at,
                            session.ip_address,
                            json.dumps(serialize_device_info(session.device_info)),
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("credential token already bound to a session")
        return evicted

    def get_session(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE session_token = %s", (session_token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_credential(self, credential_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE credential_token = %s AND is_active",
                (credential_token,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_token: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_session SET last_activity = %s WHERE session_token = %s AND is_active",
                (now, session_token),
            )
            return result.rowcount > 0

    def deactivate_session(
        self, session_token: str, reason: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, logout_time = %s, logout_reason = %s
                WHERE session_token = %s AND is_active
                RETURNING *
                """,
                (now, reason, session_token),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def deactivate_user_sessions(
        self,
        user_id: str,
        reason: str,
        now: datetime,
        *,
        except_token: Optional[str] = None,
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, logout_time = %s, logout_reason = %s
                WHERE user_id = %s AND is_active AND session_token IS DISTINCT FROM %s
                RETURNING *
                """,
                (now, reason, user_id, except_token),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def expire_sessions(self, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_session
                SET is_active = FALSE, logout_time = %s, logout_reason = 'token_expired'
                WHERE is_active AND expires_at <= %s
                RETURNING *
                """,
                (now, now),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def list_sessions(
        self,
        *,
        user_ids: Optional[Iterable[str]] = None,
        active_only: bool = False,
    ) -> List[Session]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_ids is not None:
            clauses.append("user_id = ANY(%s)")
            params.append(list(user_ids))
        if active_only:
            clauses.append("is_active")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM user_session {where} ORDER BY last_activity DESC",
                params,
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    # login history
    def append_login_history(self, entry: LoginHistoryEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_history (id, email, user_id, success, failure_reason, session_token,
                    ip_address, user_agent, device_info, security, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s)
                """,
                (
                    entry.id,
                    entry.email,
                    entry.user_id,
                    entry.success,
                    entry.failure_reason,
                    entry.session_token,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(serialize_device_info(entry.device_info)),
                    json.dumps(serialize_security(entry.security)),
                    entry.timestamp,
                ),
            )

    def list_login_history(
        self,
        *,
        email: Optional[str] = None,
        user_ids: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
    ) -> List[LoginHistoryEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if email is not None:
            clauses.append("lower(email) = %s")
            params.append(normalize_email(email))
        if user_ids is not None:
            clauses.append("user_id = ANY(%s)")
            params.append(list(user_ids))
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if success is not None:
            clauses.append("success = %s")
            params.append(success)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM login_history {where} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [
            LoginHistoryEntry(
                id=row["id"],
                email=row["email"],
                user_id=row.get("user_id"),
                success=bool(row["success"]),
                failure_reason=row.get("failure_reason"),
                session_token=row.get("session_token"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                timestamp=parse_datetime(row["created_at"]),
                device_info=deserialize_device_info(row.get("device_info")),
                security=deserialize_security(row.get("security")),
            )
            for row in rows
        ]

    # session config
    def get_session_config(self) -> Optional[SessionConfig]:
        with self._connect() as conn:
            row = conn.execute("SELECT config FROM session_config WHERE id = 1").fetchone()
        if not row:
            return None
        raw = row["config"]
        if isinstance(raw, str):
            raw = json.loads(raw)
        return deserialize_session_config(raw)

    def save_session_config(self, config: SessionConfig) -> SessionConfig:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO session_config (id, config, updated_at) VALUES (1, %s::jsonb, now())
                ON CONFLICT (id) DO UPDATE SET config = EXCLUDED.config, updated_at = now()
                """,
                (json.dumps(serialize_session_config(config)),),
            )
        return config
