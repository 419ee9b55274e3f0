from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from admauth.config import SessionCapPolicy, Settings
from admauth.logging import get_logger
from admauth.service.broadcast import ALL, ForceLogoutBroadcaster
from admauth.service.client_info import RequestMeta
from admauth.service.errors import ConflictError, NotFoundError, ValidationError
from admauth.service.tokens import CredentialTokenCodec
from admauth.storage.errors import ConstraintViolation
from admauth.storage.models import Account, Rank, Session, SessionConfig, utcnow

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100

# (min, max, message) per integer setting
_CONFIG_RANGES = {
    "session_timeout_days": (1, 365, "Session timeout must be between 1 and 365 days"),
    "max_active_sessions": (1, 50, "Max active sessions must be between 1 and 50"),
    "require_reauthentication_hours": (
        1,
        168,
        "Reauthentication time must be between 1 and 168 hours",
    ),
    "cleanup_expired_sessions_interval_hours": (
        1,
        168,
        "Cleanup interval must be between 1 and 168 hours",
    ),
}
_CONFIG_FLAGS = (
    "enforce_location_tracking",
    "enable_suspicious_activity_detection",
    "auto_logout_on_suspicious_activity",
)


@dataclass
class SessionPage:
    sessions: List[Session]
    accounts: Dict[str, Account]
    current: int
    total: int
    count: int
    total_sessions: int

    @property
    def pagination(self) -> dict:
        return {
            "current": self.current,
            "total": self.total,
            "count": self.count,
            "totalSessions": self.total_sessions,
        }


def validate_config_updates(updates: Dict[str, Any]) -> List[str]:
    """Return every range violation found in ``updates``."""
    errors: List[str] = []
    for name, (low, high, message) in _CONFIG_RANGES.items():
        value = updates.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
            errors.append(message)
    for name in _CONFIG_FLAGS:
        value = updates.get(name)
        if value is not None and not isinstance(value, bool):
            errors.append(f"{name} must be a boolean")
    return errors


class SessionRegistry:
    """Owns session records: issuance under the active-session cap,
    credential validation, activity tracking and invalidation.

    Every invalidation is pushed through the force-logout broadcaster, and
    the credential is marked revoked in Redis when a cache is configured.
    """

    def __init__(
        self,
        store,
        tokens: CredentialTokenCodec,
        broadcaster: ForceLogoutBroadcaster,
        settings: Settings,
        *,
        cache=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.broadcaster = broadcaster
        self.settings = settings
        self.cache = cache
        self.clock = clock or utcnow

    # configuration
    def default_config(self) -> SessionConfig:
        return SessionConfig(
            session_timeout_days=self.settings.session_timeout_days,
            max_active_sessions=self.settings.max_active_sessions,
        )

    def get_config(self) -> SessionConfig:
        return self.store.get_session_config() or self.default_config()

    def update_config(self, updates: Dict[str, Any], *, actor_id: str) -> SessionConfig:
        errors = validate_config_updates(updates)
        if errors:
            raise ValidationError("; ".join(errors), detail={"errors": errors})
        known = {f.name for f in fields(SessionConfig)} - {"updated_at", "updated_by"}
        changes = {k: v for k, v in updates.items() if k in known and v is not None}
        config = replace(
            self.get_config(), **changes, updated_at=self.clock(), updated_by=actor_id
        )
        saved = self.store.save_session_config(config)
        logger.info("session_config_updated", actor_id=actor_id, fields=sorted(changes))
        return saved

    # lifecycle
    def new_session_token(self) -> str:
        return str(uuid.uuid4())

    async def create(
        self,
        user_id: str,
        credential_token: str,
        meta: Optional[RequestMeta] = None,
        *,
        session_token: Optional[str] = None,
        config: Optional[SessionConfig] = None,
    ) -> Session:
        meta = meta or RequestMeta()
        config = config or self.get_config()
        now = self.clock()
        session = Session.new(
            user_id,
            credential_token,
            timeout_days=config.session_timeout_days,
            ip_address=meta.ip_address if config.enforce_location_tracking else None,
            device_info=meta.device_info,
            now=now,
            session_token=session_token or self.new_session_token(),
        )
        evict = self.settings.session_cap_policy == SessionCapPolicy.EVICT_OLDEST
        try:
            evicted = self.store.create_session(
                session,
                max_active=config.max_active_sessions,
                evict_oldest=evict,
                now=now,
            )
        except ConstraintViolation as exc:
            if exc.message == "active session limit reached":
                logger.warning(
                    "session_limit_rejected",
                    user_id=user_id,
                    max_active=config.max_active_sessions,
                )
                raise ConflictError(
                    "Maximum number of active sessions reached", detail=exc.detail
                ) from exc
            raise
        for stale in evicted:
            await self._revoke(stale)
        logger.info(
            "session_created",
            user_id=user_id,
            session_token=session.session_token,
            evicted=len(evicted),
        )
        return session

    async def validate(self, credential_token: str) -> Optional[Session]:
        """Return the live session bound to ``credential_token`` or ``None``."""
        if not credential_token:
            return None
        now = self.clock()
        payload = self.tokens.decode(credential_token, now=now)
        if payload is None:
            return None
        if self.cache is not None:
            try:
                if await self.cache.is_credential_revoked(credential_token):
                    return None
            except Exception as exc:
                logger.warning("revocation_lookup_failed", error=str(exc))
        session = self.store.get_session_by_credential(credential_token)
        if session is None or not session.is_live(now):
            return None
        if session.user_id != payload["sub"] or session.session_token != payload["sid"]:
            logger.warning("credential_session_mismatch", user_id=payload["sub"])
            return None
        return session

    def touch(self, session_token: str) -> bool:
        return self.store.touch_session(session_token, self.clock())

    async def _revoke(self, session: Session) -> None:
        if self.cache is not None:
            try:
                await self.cache.mark_credential_revoked(
                    session.credential_token, session.expires_at
                )
            except Exception as exc:
                logger.warning("revocation_marker_failed", error=str(exc))
        await self.broadcaster.publish(
            session.user_id,
            session.session_token,
            reason=session.logout_reason or "force_logout",
        )

    async def invalidate(self, session_token: str, *, reason: str = "force_logout") -> Session:
        closed = self.store.deactivate_session(session_token, reason, self.clock())
        if closed is None:
            if self.store.get_session(session_token) is None:
                raise NotFoundError("Session not found")
            raise NotFoundError("Session is not active")
        await self._revoke(closed)
        logger.info(
            "session_invalidated",
            user_id=closed.user_id,
            session_token=session_token,
            reason=reason,
        )
        return closed

    async def invalidate_user(
        self,
        user_id: str,
        *,
        reason: str = "force_logout",
        except_token: Optional[str] = None,
    ) -> List[Session]:
        closed = self.store.deactivate_user_sessions(
            user_id, reason, self.clock(), except_token=except_token
        )
        for session in closed:
            if self.cache is not None:
                try:
                    await self.cache.mark_credential_revoked(
                        session.credential_token, session.expires_at
                    )
                except Exception as exc:
                    logger.warning("revocation_marker_failed", error=str(exc))
        if except_token is None:
            await self.broadcaster.publish(user_id, ALL, reason=reason)
        else:
            for session in closed:
                await self.broadcaster.publish(user_id, session.session_token, reason=reason)
        logger.info(
            "user_sessions_invalidated", user_id=user_id, reason=reason, count=len(closed)
        )
        return closed

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        expired = self.store.expire_sessions(now or self.clock())
        for session in expired:
            await self.broadcaster.publish(
                session.user_id, session.session_token, reason="token_expired"
            )
        if expired:
            logger.info("sessions_expired", count=len(expired))
        return len(expired)

    def sweep_interval_seconds(self) -> int:
        hours = self.get_config().cleanup_expired_sessions_interval_hours
        return max(1, min(hours * 3600, self.settings.session_sweep_interval_seconds))

    # queries
    def list_visible(
        self,
        visible_ranks: Iterable[Rank],
        *,
        user_id: Optional[str] = None,
        active_only: bool = False,
        page: int = 1,
        limit: int = 50,
    ) -> SessionPage:
        accounts = {a.id: a for a in self.store.list_accounts(ranks=visible_ranks)}
        if user_id is not None:
            user_ids = [user_id] if user_id in accounts else []
        else:
            user_ids = list(accounts)
        sessions = self.store.list_sessions(user_ids=user_ids, active_only=active_only)
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        start = (page - 1) * limit
        window = sessions[start : start + limit]
        return SessionPage(
            sessions=window,
            accounts=accounts,
            current=page,
            total=math.ceil(len(sessions) / limit) if sessions else 0,
            count=len(window),
            total_sessions=len(sessions),
        )


def session_expiry(config: SessionConfig, now: datetime) -> datetime:
    return now + timedelta(days=config.session_timeout_days)
