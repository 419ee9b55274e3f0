"""Unit tests for the login lockout policy.

Tests for:
- Threshold and lock window
- Lazy expiry of a lock
- Counter reset on success
"""

from datetime import datetime, timedelta, timezone

import pytest

from admauth.service.lockout import LockoutPolicy
from admauth.storage.models import LockoutState

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy():
    return LockoutPolicy(threshold=5, window_seconds=30)


def _fail(policy, state, times, now=NOW):
    for _ in range(times):
        state = policy.register_failure(state, now)
    return state


class TestRegisterFailure:
    """Tests for failure accounting."""

    def test_failures_below_threshold_do_not_lock(self, policy):
        """Four failures count up without locking."""
        state = _fail(policy, LockoutState(), 4)

        assert state.failed_count == 4
        assert state.total_attempts == 4
        assert state.last_failed_attempt == NOW
        assert state.locked_until is None
        assert policy.evaluate(state, NOW).locked is False

    def test_fifth_failure_locks_for_window(self, policy):
        """Reaching the threshold locks for the window and restarts the cycle."""
        state = _fail(policy, LockoutState(), 5)

        assert state.locked_until == NOW + timedelta(seconds=30)
        assert state.failed_count == 0
        assert state.total_attempts == 5
        decision = policy.evaluate(state, NOW)
        assert decision.locked is True
        assert decision.remaining_seconds == 30

    def test_threshold_is_configurable(self):
        """A lower threshold locks sooner."""
        policy = LockoutPolicy(threshold=2, window_seconds=10)
        state = _fail(policy, LockoutState(), 2)

        assert policy.evaluate(state, NOW).locked is True


class TestEvaluate:
    """Tests for lock evaluation."""

    def test_remaining_seconds_rounds_up(self, policy):
        """Partial seconds round up so a locked account never reports 0."""
        state = LockoutState(locked_until=NOW + timedelta(milliseconds=200))

        decision = policy.evaluate(state, NOW)

        assert decision.locked is True
        assert decision.remaining_seconds == 1

    def test_lock_expires_lazily(self, policy):
        """Past lockedUntil the account is unlocked without any write."""
        state = _fail(policy, LockoutState(), 5)

        later = NOW + timedelta(seconds=31)
        decision = policy.evaluate(state, later)

        assert decision.locked is False
        assert decision.remaining_seconds == 0
        assert state.locked_until is not None

    def test_unlocked_state(self, policy):
        """A fresh state is never locked."""
        assert policy.evaluate(LockoutState(), NOW).locked is False


class TestRegisterSuccess:
    """Tests for the success transition."""

    def test_success_resets_counters_but_keeps_total(self, policy):
        """Success clears the cycle but preserves lifetime attempts."""
        state = _fail(policy, LockoutState(), 3)

        reset = policy.register_success(state)

        assert reset.failed_count == 0
        assert reset.last_failed_attempt is None
        assert reset.locked_until is None
        assert reset.total_attempts == 3

    def test_failures_after_expired_lock_start_a_new_cycle(self, policy):
        """After a lock lapses, another five failures lock again."""
        state = _fail(policy, LockoutState(), 5)
        later = NOW + timedelta(seconds=60)
        state = _fail(policy, state, 4, now=later)

        assert policy.evaluate(state, later).locked is False
        state = _fail(policy, state, 1, now=later)
        assert policy.evaluate(state, later).locked is True
        assert state.total_attempts == 10
