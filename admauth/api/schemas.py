from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "validation_error",
        "invalid_password",
        "invalid_2fa_code",
        "conflict",
        "account_locked",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    # Single-label domains (intranet hosts) are accepted
    for label in domain.split("."):
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class CamelModel(BaseModel):
    """Wire models use camelCase; Python code uses the snake_case names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# authentication
class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorVerifyRequest(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    token: str = Field(..., min_length=1, max_length=32)
    is_backup_code: bool = False


class AccountResponse(CamelModel):
    id: str
    name: str
    email: str
    rank: str
    two_factor_enabled: bool = False
    created_at: datetime
    updated_at: datetime


class LoginResponse(CamelModel):
    requires_two_factor: bool = False
    user_id: str
    token: Optional[str] = None
    session_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    user: Optional[AccountResponse] = None


class MeResponse(AccountResponse):
    effective_rank: str
    simulated_rank: Optional[str] = None
    is_simulating: bool = False
    can_use_view_as: bool = False
    permissions: List[str] = Field(default_factory=list)
    session_token: str


# two-factor management
class TwoFactorSetupResponse(CamelModel):
    secret: str
    qr_payload: str


class TwoFactorConfirmRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=16)


class PasswordConfirmRequest(CamelModel):
    password: str = Field(..., min_length=1, max_length=256)


class BackupCodesResponse(CamelModel):
    backup_codes: List[str]


class BackupCodeStatusResponse(CamelModel):
    backup_codes: List[str]
    total: int
    unused: int
    used: int


# sessions
class DeviceInfoResponse(CamelModel):
    user_agent: str
    browser: str
    os: str
    device: str
    is_mobile: bool


class SessionUserResponse(CamelModel):
    id: str
    name: str
    email: str
    rank: str


class SessionResponse(CamelModel):
    session_token: str
    user_id: str
    user: Optional[SessionUserResponse] = None
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_active: bool
    logout_time: Optional[datetime] = None
    logout_reason: Optional[str] = None
    ip_address: Optional[str] = None
    device_info: DeviceInfoResponse


class PaginationResponse(CamelModel):
    current: int
    total: int
    count: int
    total_sessions: int


class SessionListResponse(CamelModel):
    sessions: List[SessionResponse]
    pagination: PaginationResponse


class ForceLogoutRequest(CamelModel):
    session_token: Optional[str] = Field(default=None, max_length=64)
    user_id: Optional[str] = Field(default=None, max_length=64)
    logout_all: bool = False

    @model_validator(mode="after")
    def _check_target(self) -> "ForceLogoutRequest":
        if self.session_token:
            return self
        if self.user_id and self.logout_all:
            return self
        raise ValueError("sessionToken or userId with logoutAll is required")


class ForceLogoutResponse(CamelModel):
    logged_out: int
    session_tokens: List[str]


class SessionConfigBody(CamelModel):
    session_timeout_days: int
    max_active_sessions: int
    enforce_location_tracking: bool
    enable_suspicious_activity_detection: bool
    auto_logout_on_suspicious_activity: bool
    require_reauthentication_hours: int
    cleanup_expired_sessions_interval_hours: int
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class SessionConfigUpdateRequest(CamelModel):
    # Loose types so out-of-range values reach the range checks and are
    # reported together
    session_timeout_days: Optional[Any] = None
    max_active_sessions: Optional[Any] = None
    enforce_location_tracking: Optional[Any] = None
    enable_suspicious_activity_detection: Optional[Any] = None
    auto_logout_on_suspicious_activity: Optional[Any] = None
    require_reauthentication_hours: Optional[Any] = None
    cleanup_expired_sessions_interval_hours: Optional[Any] = None


# login history
class SecurityResponse(CamelModel):
    is_first_login: bool
    is_suspicious_activity: bool
    suspicious_reasons: List[str]
    risk_score: int


class LoginHistoryItem(CamelModel):
    id: str
    email: str
    user_id: Optional[str] = None
    success: bool
    failure_reason: Optional[str] = None
    session_token: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime
    device_info: DeviceInfoResponse
    security: SecurityResponse


class LoginHistoryStatistics(CamelModel):
    total: int
    successful: int
    failed: int
    suspicious: int
    unique_ips: int


class LoginHistoryResponse(CamelModel):
    entries: List[LoginHistoryItem]
    statistics: LoginHistoryStatistics


# account administration
class CreateAccountRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=128)
    email: str
    password: str = Field(..., max_length=256)
    rank: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)


class UpdateAccountRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    email: Optional[str] = None
    rank: Optional[str] = Field(default=None, max_length=32)
    password: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)


class AccountListResponse(CamelModel):
    items: List[AccountResponse]
