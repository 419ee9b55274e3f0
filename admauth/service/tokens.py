from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime
from typing import Any, Optional

from admauth.config import Settings
from admauth.logging import get_logger

logger = get_logger(__name__)

_LEEWAY_SECONDS = 120


def _encode_segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _decode_segment(segment: str) -> dict:
    padding = "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(segment + padding))


class CredentialTokenCodec:
    """HS256 credential tokens binding a user id to a session token.

    A decoded token only proves the signature and claims are sound; the
    session registry still decides whether the bound session is alive.
    """

    def __init__(self, settings: Settings) -> None:
        self.secret = settings.jwt_secret
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience

    def _sign(self, message: bytes) -> str:
        digest = hmac.new(self.secret.encode(), message, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()

    def issue(
        self, user_id: str, session_token: str, *, issued_at: datetime, expires_at: datetime
    ) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {
            "sub": user_id,
            "sid": session_token,
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        signing_input = f"{_encode_segment(header)}.{_encode_segment(payload)}"
        return f"{signing_input}.{self._sign(signing_input.encode())}"

    def decode(self, token: str, *, now: datetime) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, signature = token.split(".")
            header = _decode_segment(header_b64)
            payload = _decode_segment(payload_b64)
        # ValueError also covers JSON and base64 decoding problems
        except (ValueError, TypeError):
            return None
        if header.get("alg") != "HS256":
            logger.warning("credential_token_alg_rejected", alg=header.get("alg"))
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}".encode())
        if not hmac.compare_digest(expected, signature):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        if not payload.get("sub") or not payload.get("sid"):
            return None
        try:
            exp = int(payload.get("exp", 0))
        except (TypeError, ValueError):
            return None
        if exp + _LEEWAY_SECONDS < now.timestamp():
            return None
        return payload
