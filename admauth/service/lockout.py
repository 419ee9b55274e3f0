from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from admauth.storage.models import LockoutState

DEFAULT_THRESHOLD = 5
DEFAULT_WINDOW_SECONDS = 30


@dataclass(frozen=True)
class LockoutDecision:
    locked: bool
    remaining_seconds: int = 0


class LockoutPolicy:
    """Progressive login lockout.

    ``threshold`` consecutive failures lock the account for ``window``; the
    cycle counter then restarts at zero while ``total_attempts`` keeps
    counting for the lifetime of the account. Lock state is always derived
    from ``locked_until`` against the supplied clock, so an expired lock
    needs no write to clear.

    Every method is pure. Stores apply :meth:`register_failure` and
    :meth:`register_success` through their atomic ``update_lockout``.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        self.threshold = max(1, int(threshold))
        self.window = timedelta(seconds=max(1, int(window_seconds)))

    def evaluate(self, state: LockoutState, now: datetime) -> LockoutDecision:
        locked_until = state.locked_until
        if locked_until is None or locked_until <= now:
            return LockoutDecision(locked=False, remaining_seconds=0)
        remaining = math.ceil((locked_until - now).total_seconds())
        return LockoutDecision(locked=True, remaining_seconds=max(1, remaining))

    def register_failure(self, state: LockoutState, now: datetime) -> LockoutState:
        failed = state.failed_count + 1
        locked_until = state.locked_until
        if failed >= self.threshold:
            locked_until = now + self.window
            failed = 0
        return LockoutState(
            failed_count=failed,
            total_attempts=state.total_attempts + 1,
            last_failed_attempt=now,
            locked_until=locked_until,
        )

    def register_success(self, state: LockoutState) -> LockoutState:
        return replace(
            state,
            failed_count=0,
            last_failed_attempt=None,
            locked_until=None,
        )
