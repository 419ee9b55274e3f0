"""Helpers shared between the memory and postgres stores.

Both backends persist the same records, so the JSON shapes for nested
values (backup codes, device info, risk assessment, session config) and the
at-rest encryption of TOTP secrets live here.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from admauth.logging import get_logger
from admauth.storage.models import (
    BackupCode,
    DeviceInfo,
    SecurityAssessment,
    SessionConfig,
)

logger = get_logger(__name__)


# ============================================================================
# VALUE NORMALIZATION
# ============================================================================

def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# TOTP SECRET ENCRYPTION
# ============================================================================

def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: Optional[str], fs_root: Path) -> Fernet:
    """Build the Fernet cipher used for TOTP secrets at rest.

    Key material falls back to ``MFA_SECRET_KEY``, then ``JWT_SECRET``, then a
    key persisted next to the store.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        key_path = fs_root / ".mfa_key"
        try:
            if key_path.exists():
                material = key_path.read_text().strip()
        except OSError as exc:
            logger.warning("mfa_key_read_failed", error=str(exc), path=str(key_path))
        if not material:
            generated = secrets.token_urlsafe(64)
            try:
                key_path.parent.mkdir(parents=True, exist_ok=True)
                key_path.write_text(generated)
                os.chmod(key_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
            material = generated
    return Fernet(_derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # Key rotated or record written before encryption was enabled
        logger.warning("mfa_secret_decrypt_failed")
        return None


# ============================================================================
# NESTED RECORD SHAPES
# ============================================================================

def serialize_backup_codes(codes: List[BackupCode]) -> List[Dict[str, Any]]:
    return [
        {"code": c.code, "used": c.used, "used_at": format_datetime(c.used_at)}
        for c in codes
    ]


def deserialize_backup_codes(raw: Optional[List[Dict[str, Any]]]) -> List[BackupCode]:
    return [
        BackupCode(
            code=str(item["code"]),
            used=bool(item.get("used", False)),
            used_at=parse_datetime(item.get("used_at")),
        )
        for item in raw or []
    ]


def backup_code_matches(backup: BackupCode, code: str) -> bool:
    """Constant-time comparison of an unused backup code."""
    if backup.used:
        return False
    return hmac.compare_digest(backup.code.encode(), (code or "").encode())


def serialize_device_info(info: DeviceInfo) -> Dict[str, Any]:
    return asdict(info)


def deserialize_device_info(raw: Optional[Dict[str, Any]]) -> DeviceInfo:
    if not raw:
        return DeviceInfo()
    return DeviceInfo(
        user_agent=raw.get("user_agent", "Unknown"),
        browser=raw.get("browser", "Unknown"),
        os=raw.get("os", "Unknown"),
        device=raw.get("device", "Unknown"),
        is_mobile=bool(raw.get("is_mobile", False)),
    )


def serialize_security(assessment: SecurityAssessment) -> Dict[str, Any]:
    return asdict(assessment)


def deserialize_security(raw: Optional[Dict[str, Any]]) -> SecurityAssessment:
    if not raw:
        return SecurityAssessment()
    return SecurityAssessment(
        is_first_login=bool(raw.get("is_first_login", False)),
        is_suspicious_activity=bool(raw.get("is_suspicious_activity", False)),
        suspicious_reasons=list(raw.get("suspicious_reasons") or []),
        risk_score=int(raw.get("risk_score", 0)),
    )


def serialize_session_config(config: SessionConfig) -> Dict[str, Any]:
    data = asdict(config)
    data["updated_at"] = format_datetime(config.updated_at)
    return data


def deserialize_session_config(raw: Dict[str, Any]) -> SessionConfig:
    defaults = SessionConfig()
    return SessionConfig(
        session_timeout_days=int(raw.get("session_timeout_days", defaults.session_timeout_days)),
        max_active_sessions=int(raw.get("max_active_sessions", defaults.max_active_sessions)),
        enforce_location_tracking=bool(
            raw.get("enforce_location_tracking", defaults.enforce_location_tracking)
        ),
        enable_suspicious_activity_detection=bool(
            raw.get(
                "enable_suspicious_activity_detection",
                defaults.enable_suspicious_activity_detection,
            )
        ),
        auto_logout_on_suspicious_activity=bool(
            raw.get(
                "auto_logout_on_suspicious_activity",
                defaults.auto_logout_on_suspicious_activity,
            )
        ),
        require_reauthentication_hours=int(
            raw.get("require_reauthentication_hours", defaults.require_reauthentication_hours)
        ),
        cleanup_expired_sessions_interval_hours=int(
            raw.get(
                "cleanup_expired_sessions_interval_hours",
                defaults.cleanup_expired_sessions_interval_hours,
            )
        ),
        updated_at=parse_datetime(raw.get("updated_at")),
        updated_by=raw.get("updated_by"),
    )
