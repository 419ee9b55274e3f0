from __future__ import annotations

import re
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from admauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


def normalize_password(password: Optional[str]) -> str:
    """Surrounding whitespace is never part of a password."""
    return (password or "").strip()


def password_strength_errors(password: str) -> List[str]:
    """Return every unmet password rule (empty when the password is acceptable)."""
    password = normalize_password(password)
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_CHARS.search(password):
        errors.append("Password must contain at least one special character")
    return errors


class PasswordManager:
    """argon2id hashing for account passwords."""

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(normalize_password(password))

    def verify(self, password_hash: str, password: str) -> bool:
        password = normalize_password(password)
        if not password:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
