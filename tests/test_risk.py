"""Unit tests for login risk scoring."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from admauth.service.risk import assess_login
from admauth.storage.memory import MemoryStore
from admauth.storage.models import LoginHistoryEntry

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
EMAIL = "ann@example.com"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path), mfa_encryption_key="unit-test-mfa-key")


def _entry(store, *, success, minutes_ago, ip="10.0.0.1", agent="Firefox"):
    store.append_login_history(
        LoginHistoryEntry(
            id=str(uuid.uuid4()),
            email=EMAIL,
            user_id="u1",
            success=success,
            failure_reason=None if success else "invalid_credentials",
            session_token=None,
            ip_address=ip,
            user_agent=agent,
            timestamp=NOW - timedelta(minutes=minutes_ago),
        )
    )


class TestAssessLogin:
    def test_first_login(self, store):
        """No earlier success means a first login with no location checks."""
        result = assess_login(store, EMAIL, ip_address="1.2.3.4", user_agent="x", now=NOW)

        assert result.is_first_login is True
        assert result.suspicious_reasons == []
        assert result.is_suspicious_activity is False

    def test_new_location_and_device(self, store):
        _entry(store, success=True, minutes_ago=60 * 24)

        result = assess_login(store, EMAIL, ip_address="1.2.3.4", user_agent="Curl", now=NOW)

        assert result.suspicious_reasons == ["unusual_location", "unusual_device"]
        assert result.risk_score == 35
        assert result.is_suspicious_activity is True

    def test_recent_failures(self, store):
        for minutes in (1, 2, 3):
            _entry(store, success=False, minutes_ago=minutes)

        result = assess_login(store, EMAIL, ip_address="10.0.0.1", user_agent="Firefox", now=NOW)

        assert result.suspicious_reasons == ["multiple_failed_attempts"]
        assert result.risk_score == 30
        assert result.is_suspicious_activity is False

    def test_rapid_logins(self, store):
        for minutes in (1, 2, 3):
            _entry(store, success=True, minutes_ago=minutes)

        result = assess_login(store, EMAIL, ip_address="10.0.0.1", user_agent="Firefox", now=NOW)

        assert result.suspicious_reasons == ["rapid_logins"]

    def test_detection_disabled(self, store):
        for minutes in (1, 2, 3):
            _entry(store, success=False, minutes_ago=minutes)

        result = assess_login(
            store, EMAIL, ip_address="9.9.9.9", user_agent="x", now=NOW, detect=False
        )

        assert result.suspicious_reasons == []
        assert result.risk_score == 0
