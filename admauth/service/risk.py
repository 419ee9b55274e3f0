from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from admauth.storage.models import SecurityAssessment

FAILED_ATTEMPT_WINDOW = timedelta(minutes=15)
FAILED_ATTEMPT_THRESHOLD = 3
KNOWN_CLIENT_WINDOW = timedelta(days=30)
KNOWN_CLIENT_SAMPLE = 10
RAPID_LOGIN_WINDOW = timedelta(minutes=5)
RAPID_LOGIN_THRESHOLD = 3

# reason -> score contribution
RISK_WEIGHTS = {
    "multiple_failed_attempts": 30,
    "unusual_location": 20,
    "unusual_device": 15,
    "rapid_logins": 25,
}
SUSPICIOUS_SCORE = 30


def assess_login(
    store,
    email: str,
    *,
    ip_address: Optional[str],
    user_agent: Optional[str],
    now: datetime,
    detect: bool = True,
) -> SecurityAssessment:
    """Score a login attempt against the account's recent history.

    Only earlier entries are considered; the attempt being scored has not
    been written yet.
    """
    successes = store.list_login_history(
        email=email, since=now - KNOWN_CLIENT_WINDOW, success=True
    )
    is_first_login = not store.list_login_history(email=email, success=True)
    if not detect:
        return SecurityAssessment(is_first_login=is_first_login)

    reasons: List[str] = []
    failures = store.list_login_history(
        email=email, since=now - FAILED_ATTEMPT_WINDOW, success=False
    )
    if len(failures) >= FAILED_ATTEMPT_THRESHOLD:
        reasons.append("multiple_failed_attempts")

    recent = successes[:KNOWN_CLIENT_SAMPLE]
    if recent:
        if ip_address and ip_address not in {e.ip_address for e in recent}:
            reasons.append("unusual_location")
        if user_agent and user_agent not in {e.user_agent for e in recent}:
            reasons.append("unusual_device")

    rapid = [e for e in successes if e.timestamp >= now - RAPID_LOGIN_WINDOW]
    if len(rapid) >= RAPID_LOGIN_THRESHOLD:
        reasons.append("rapid_logins")

    score = sum(RISK_WEIGHTS[r] for r in reasons)
    return SecurityAssessment(
        is_first_login=is_first_login,
        is_suspicious_activity=score > SUSPICIOUS_SCORE or len(reasons) > 2,
        suspicious_reasons=reasons,
        risk_score=score,
    )
