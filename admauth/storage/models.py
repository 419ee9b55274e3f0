from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Rank(str, Enum):
    """Closed, totally ordered set of admin ranks (senior first)."""

    DEVELOPER = "Developer"
    ADMIN = "Admin"
    MODERATOR = "Moderator"
    WERKNEMER = "Werknemer"

    @property
    def level(self) -> int:
        return RANK_LEVELS[self]

    def outranks(self, other: "Rank") -> bool:
        return self.level > other.level

    @classmethod
    def parse(cls, value: "str | Rank") -> "Rank":
        """Resolve a rank label, accepting the legacy labels used by older
        console data (``Eigenaar``/``Manager``). Raises ``ValueError`` for
        anything outside the closed set."""
        if isinstance(value, Rank):
            return value
        label = str(value).strip()
        for rank in cls:
            if rank.value.lower() == label.lower():
                return rank
        alias = _LEGACY_RANK_LABELS.get(label.lower())
        if alias is None:
            raise ValueError(f"unknown rank: {value!r}")
        return alias


RANK_LEVELS: Dict[Rank, int] = {
    Rank.DEVELOPER: 4,
    Rank.ADMIN: 3,
    Rank.MODERATOR: 2,
    Rank.WERKNEMER: 1,
}

_LEGACY_RANK_LABELS: Dict[str, Rank] = {
    "eigenaar": Rank.ADMIN,
    "manager": Rank.MODERATOR,
}


@dataclass(frozen=True)
class LockoutState:
    failed_count: int = 0
    total_attempts: int = 0
    last_failed_attempt: Optional[datetime] = None
    locked_until: Optional[datetime] = None


@dataclass
class BackupCode:
    code: str
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class Account:
    id: str
    name: str
    email: str
    password_hash: str
    rank: Rank = Rank.WERKNEMER
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    backup_codes: List[BackupCode] = field(default_factory=list)
    last_totp_step: Optional[int] = None
    lockout: LockoutState = field(default_factory=LockoutState)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "Account":
        return replace(
            self,
            backup_codes=[replace(code) for code in self.backup_codes],
        )


@dataclass
class DeviceInfo:
    user_agent: str = "Unknown"
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Unknown"
    is_mobile: bool = False


@dataclass
class Session:
    session_token: str
    credential_token: str
    user_id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_active: bool = True
    logout_time: Optional[datetime] = None
    logout_reason: Optional[str] = None
    ip_address: Optional[str] = None
    device_info: DeviceInfo = field(default_factory=DeviceInfo)

    @classmethod
    def new(
        cls,
        user_id: str,
        credential_token: str,
        *,
        timeout_days: int = 30,
        ip_address: str | None = None,
        device_info: DeviceInfo | None = None,
        now: datetime | None = None,
        session_token: str | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            session_token=session_token or str(uuid.uuid4()),
            credential_token=credential_token,
            user_id=user_id,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(days=timeout_days),
            ip_address=ip_address,
            device_info=device_info or DeviceInfo(),
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass
class SecurityAssessment:
    is_first_login: bool = False
    is_suspicious_activity: bool = False
    suspicious_reasons: List[str] = field(default_factory=list)
    risk_score: int = 0


@dataclass(frozen=True)
class LoginHistoryEntry:
    id: str
    email: str
    user_id: Optional[str]
    success: bool
    failure_reason: Optional[str]
    session_token: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    timestamp: datetime
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    security: SecurityAssessment = field(default_factory=SecurityAssessment)


@dataclass
class SessionConfig:
    session_timeout_days: int = 30
    max_active_sessions: int = 5
    enforce_location_tracking: bool = True
    enable_suspicious_activity_detection: bool = True
    auto_logout_on_suspicious_activity: bool = False
    require_reauthentication_hours: int = 24
    cleanup_expired_sessions_interval_hours: int = 1
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
