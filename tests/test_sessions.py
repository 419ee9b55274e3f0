"""Unit tests for the session registry and its collaborators.

Tests for:
- Active-session cap (evict oldest and reject)
- Credential validation and invalidation
- Expiry sweep
- Visible-session pagination
- Session config validation
- Force-logout broadcaster delivery and the cross-worker relay
- Credential token codec and client metadata parsing
"""

import asyncio
from datetime import timedelta

import pytest

from admauth.config import Settings
from admauth.service.broadcast import ALL, ForceLogoutBroadcaster, ForceLogoutEvent
from admauth.service.client_info import RequestMeta, client_ip, parse_user_agent
from admauth.service.errors import ConflictError, NotFoundError, ValidationError
from admauth.service.sessions import SessionRegistry, validate_config_updates
from admauth.service.tokens import CredentialTokenCodec
from admauth.storage.memory import MemoryStore
from admauth.storage.models import Rank

JWT_SECRET = "unit-test-jwt-secret-with-enough-length-0123456789"


def _settings(**overrides):
    return Settings(jwt_secret=JWT_SECRET, **overrides)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path), mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def broadcaster():
    return ForceLogoutBroadcaster()


def _registry(store, broadcaster, clock, **overrides):
    settings = _settings(**overrides)
    return SessionRegistry(
        store, CredentialTokenCodec(settings), broadcaster, settings, clock=clock
    )


@pytest.fixture
def registry(store, broadcaster, clock):
    return _registry(store, broadcaster, clock, max_active_sessions=2)


@pytest.fixture
def user(store):
    return store.create_account("Wim", "wim@example.com", "hash", Rank.WERKNEMER)


async def _login(registry, user_id, clock, meta=None):
    sid = registry.new_session_token()
    token = registry.tokens.issue(
        user_id, sid, issued_at=clock(), expires_at=clock() + timedelta(days=30)
    )
    session = await registry.create(user_id, token, meta, session_token=sid)
    return token, session


class TestSessionCap:
    """Tests for the active-session cap."""

    async def test_oldest_session_is_evicted(self, registry, user, store, clock):
        """Issuing past the cap closes the least recently active session."""
        first_token, first = await _login(registry, user.id, clock)
        clock.advance(1)
        await _login(registry, user.id, clock)
        clock.advance(1)
        await _login(registry, user.id, clock)

        evicted = store.get_session(first.session_token)
        assert evicted.is_active is False
        assert evicted.logout_reason == "session_limit"
        assert await registry.validate(first_token) is None
        assert len(store.list_sessions(user_ids=[user.id], active_only=True)) == 2

    async def test_eviction_broadcasts_to_evicted_session(
        self, registry, user, broadcaster, clock
    ):
        sub = broadcaster.subscribe(user.id)
        _, first = await _login(registry, user.id, clock)
        clock.advance(1)
        await _login(registry, user.id, clock)
        clock.advance(1)
        await _login(registry, user.id, clock)

        event = await asyncio.wait_for(sub.next_event(), timeout=1)
        assert event.session_token == first.session_token
        assert event.reason == "session_limit"

    async def test_reject_policy_raises_conflict(self, store, broadcaster, user, clock):
        """With the reject policy a login past the cap fails with 409."""
        registry = _registry(
            store, broadcaster, clock, max_active_sessions=1, session_cap_policy="reject"
        )
        await _login(registry, user.id, clock)

        with pytest.raises(ConflictError) as excinfo:
            await _login(registry, user.id, clock)
        assert excinfo.value.status_code == 409
        assert len(store.list_sessions(user_ids=[user.id], active_only=True)) == 1

    async def test_location_tracking_off_stores_no_ip(self, registry, user, store, clock):
        registry.update_config({"enforce_location_tracking": False}, actor_id=user.id)
        meta = RequestMeta(ip_address="203.0.113.7")

        _, session = await _login(registry, user.id, clock, meta)

        assert store.get_session(session.session_token).ip_address is None


class TestValidate:
    """Tests for credential validation."""

    async def test_fresh_session_validates(self, registry, user, clock):
        token, session = await _login(registry, user.id, clock)

        found = await registry.validate(token)

        assert found.session_token == session.session_token
        assert found.user_id == user.id

    async def test_invalidated_session_is_rejected_before_token_expiry(
        self, registry, user, clock
    ):
        """A still-valid credential stops working once its session is closed."""
        token, session = await _login(registry, user.id, clock)

        closed = await registry.invalidate(session.session_token, reason="force_logout")

        assert closed.logout_reason == "force_logout"
        assert await registry.validate(token) is None

    async def test_expired_session_is_rejected(self, registry, user, clock):
        token, _ = await _login(registry, user.id, clock)
        clock.advance(31 * 24 * 3600)

        assert await registry.validate(token) is None

    async def test_tampered_token_is_rejected(self, registry, user, clock):
        token, _ = await _login(registry, user.id, clock)
        header, payload, signature = token.split(".")

        assert await registry.validate(f"{header}.{payload}.{signature[:-2]}xx") is None
        assert await registry.validate("not-a-token") is None
        assert await registry.validate("") is None

    async def test_invalidate_unknown_session(self, registry):
        with pytest.raises(NotFoundError):
            await registry.invalidate("missing")

    async def test_invalidate_twice(self, registry, user, clock):
        _, session = await _login(registry, user.id, clock)
        await registry.invalidate(session.session_token)

        with pytest.raises(NotFoundError) as excinfo:
            await registry.invalidate(session.session_token)
        assert excinfo.value.message == "Session is not active"

    async def test_invalidate_user_keeps_excepted_session(self, registry, user, clock):
        keep_token, keep = await _login(registry, user.id, clock)
        clock.advance(1)
        drop_token, _ = await _login(registry, user.id, clock)

        closed = await registry.invalidate_user(
            user.id, reason="suspicious_activity", except_token=keep.session_token
        )

        assert len(closed) == 1
        assert await registry.validate(keep_token) is not None
        assert await registry.validate(drop_token) is None


class TestExpiry:
    """Tests for the expired-session sweep."""

    async def test_expire_stale_marks_expired_sessions(self, registry, user, store, clock):
        _, session = await _login(registry, user.id, clock)
        clock.advance(31 * 24 * 3600)

        assert await registry.expire_stale() == 1
        swept = store.get_session(session.session_token)
        assert swept.is_active is False
        assert swept.logout_reason == "token_expired"
        assert await registry.expire_stale() == 0

    def test_sweep_interval_is_bounded_by_settings(self, registry, user):
        assert registry.sweep_interval_seconds() == 300


class TestListVisible:
    """Tests for rank-filtered session listing."""

    async def test_senior_sessions_are_hidden(self, registry, store, clock):
        dev = store.create_account("Dev", "dev@example.com", "hash", Rank.DEVELOPER)
        mod = store.create_account("Mod", "mod@example.com", "hash", Rank.MODERATOR)
        await _login(registry, dev.id, clock)
        await _login(registry, mod.id, clock)

        page = registry.list_visible({Rank.MODERATOR, Rank.WERKNEMER})

        assert [s.user_id for s in page.sessions] == [mod.id]
        assert dev.id not in page.accounts

    async def test_filter_on_invisible_user_is_empty(self, registry, store, clock):
        dev = store.create_account("Dev", "dev@example.com", "hash", Rank.DEVELOPER)
        await _login(registry, dev.id, clock)

        page = registry.list_visible({Rank.WERKNEMER}, user_id=dev.id)

        assert page.sessions == []
        assert page.pagination == {"current": 1, "total": 0, "count": 0, "totalSessions": 0}

    async def test_pagination(self, store, broadcaster, user, clock):
        registry = _registry(store, broadcaster, clock, max_active_sessions=10)
        for _ in range(5):
            await _login(registry, user.id, clock)
            clock.advance(1)

        page = registry.list_visible({Rank.WERKNEMER}, page=2, limit=2)

        assert page.pagination == {"current": 2, "total": 3, "count": 2, "totalSessions": 5}

    def test_limit_is_capped(self, registry):
        page = registry.list_visible({Rank.WERKNEMER}, limit=1000)
        assert page.current == 1


class TestSessionConfig:
    """Tests for runtime session configuration."""

    def test_defaults_come_from_settings(self, registry):
        config = registry.get_config()

        assert config.session_timeout_days == 30
        assert config.max_active_sessions == 2
        assert config.enforce_location_tracking is True

    def test_update_persists_and_stamps_actor(self, registry, store, clock):
        saved = registry.update_config({"session_timeout_days": 7}, actor_id="actor-1")

        assert saved.session_timeout_days == 7
        assert saved.updated_by == "actor-1"
        assert saved.updated_at == clock()
        assert store.get_session_config().session_timeout_days == 7

    def test_out_of_range_values_are_rejected(self, registry):
        with pytest.raises(ValidationError) as excinfo:
            registry.update_config(
                {"session_timeout_days": 0, "max_active_sessions": 51}, actor_id="a"
            )
        assert excinfo.value.detail["errors"] == [
            "Session timeout must be between 1 and 365 days",
            "Max active sessions must be between 1 and 50",
        ]

    def test_validation_messages(self):
        assert validate_config_updates({"require_reauthentication_hours": 169}) == [
            "Reauthentication time must be between 1 and 168 hours"
        ]
        assert validate_config_updates({"cleanup_expired_sessions_interval_hours": 0}) == [
            "Cleanup interval must be between 1 and 168 hours"
        ]
        assert validate_config_updates({"max_active_sessions": True}) == [
            "Max active sessions must be between 1 and 50"
        ]
        assert validate_config_updates({"enforce_location_tracking": "yes"}) == [
            "enforce_location_tracking must be a boolean"
        ]
        assert validate_config_updates({"session_timeout_days": 365}) == []


class TestBroadcaster:
    """Tests for force-logout fan-out."""

    async def test_events_reach_only_the_target_user(self, broadcaster):
        mine = broadcaster.subscribe("u1")
        other = broadcaster.subscribe("u2")

        await broadcaster.publish("u1", "s1", reason="force_logout")

        event = await asyncio.wait_for(mine.next_event(), timeout=1)
        assert event.targets("u1", "s1")
        assert not event.targets("u1", "s2")
        await asyncio.sleep(0)
        assert other.queue.empty()

    async def test_all_reaches_every_subscriber(self, broadcaster):
        first = broadcaster.subscribe("u1")
        second = broadcaster.subscribe("u2")

        await broadcaster.publish(ALL, ALL, reason="maintenance")

        assert (await asyncio.wait_for(first.next_event(), timeout=1)).reason == "maintenance"
        assert (await asyncio.wait_for(second.next_event(), timeout=1)).targets("u2", "x")

    async def test_unsubscribe(self, broadcaster):
        sub = broadcaster.subscribe("u1")
        assert broadcaster.subscriber_count("u1") == 1

        broadcaster.unsubscribe(sub)

        assert broadcaster.subscriber_count() == 0

    def test_event_payload(self):
        event = ForceLogoutEvent(
            user_id="u1", session_token="s1", reason="manual", timestamp="2026-01-01T00:00:00"
        )
        assert event.as_payload() == {
            "type": "force_logout",
            "userId": "u1",
            "sessionToken": "s1",
            "reason": "manual",
            "timestamp": "2026-01-01T00:00:00",
        }


class RecordingCache:
    """Stands in for Redis by recording published payloads."""

    def __init__(self):
        self.published = []

    async def publish_force_logout(self, payload):
        self.published.append(payload)
        return 1


class TestRemoteRelay:
    """Tests for events that arrive from other workers through Redis."""

    async def test_published_payload_carries_origin(self):
        cache = RecordingCache()
        broadcaster = ForceLogoutBroadcaster(cache=cache)

        await broadcaster.publish("u1", "s1", reason="manual")

        assert cache.published[0]["origin"] == broadcaster.origin
        assert cache.published[0]["sessionToken"] == "s1"

    async def test_remote_event_reaches_local_subscriber(self, broadcaster):
        """An event raised on another worker closes this worker's socket."""
        sub = broadcaster.subscribe("u1")
        remote = ForceLogoutBroadcaster(cache=RecordingCache())
        await remote.publish("u1", "s1", reason="force_logout")

        relayed = broadcaster.receive_remote(remote.cache.published[0])

        assert relayed is not None
        event = await asyncio.wait_for(sub.next_event(), timeout=1)
        assert event.targets("u1", "s1")

    async def test_own_events_are_not_delivered_twice(self):
        cache = RecordingCache()
        broadcaster = ForceLogoutBroadcaster(cache=cache)
        sub = broadcaster.subscribe("u1")
        await broadcaster.publish("u1", "s1", reason="manual")
        await asyncio.wait_for(sub.next_event(), timeout=1)

        assert broadcaster.receive_remote(cache.published[0]) is None
        await asyncio.sleep(0)
        assert sub.queue.empty()

    async def test_relay_consumes_the_message_stream(self, broadcaster):
        sub = broadcaster.subscribe("u2")

        async def messages():
            yield {"type": "other"}
            yield {"type": "force_logout", "origin": "elsewhere"}
            yield {
                "type": "force_logout",
                "userId": "u2",
                "sessionToken": ALL,
                "reason": "password_changed",
                "origin": "elsewhere",
            }

        await broadcaster.relay(messages())

        event = await asyncio.wait_for(sub.next_event(), timeout=1)
        assert event.reason == "password_changed"
        await asyncio.sleep(0)
        assert sub.queue.empty()


class TestCredentialTokens:
    """Tests for the HS256 codec."""

    def test_round_trip_claims(self, clock):
        codec = CredentialTokenCodec(_settings())
        token = codec.issue("u1", "s1", issued_at=clock(), expires_at=clock() + timedelta(hours=1))

        payload = codec.decode(token, now=clock())

        assert payload["sub"] == "u1"
        assert payload["sid"] == "s1"
        assert payload["iss"] == "admauth"
        assert payload["aud"] == "adm-console"

    def test_other_secret_is_rejected(self, clock):
        token = CredentialTokenCodec(_settings()).issue(
            "u1", "s1", issued_at=clock(), expires_at=clock() + timedelta(hours=1)
        )
        other = CredentialTokenCodec(Settings(jwt_secret="another-secret-0123456789-0123456789"))

        assert other.decode(token, now=clock()) is None

    def test_expiry_allows_leeway(self, clock):
        codec = CredentialTokenCodec(_settings())
        token = codec.issue("u1", "s1", issued_at=clock(), expires_at=clock() + timedelta(seconds=10))

        assert codec.decode(token, now=clock() + timedelta(seconds=60)) is not None
        assert codec.decode(token, now=clock() + timedelta(seconds=200)) is None


class TestClientInfo:
    """Tests for request metadata extraction."""

    def test_forwarded_for_wins(self):
        headers = {"x-forwarded-for": "198.51.100.1, 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert client_ip(headers, "10.0.0.3") == "198.51.100.1"

    def test_fallbacks(self):
        assert client_ip({"cf-connecting-ip": "192.0.2.5"}) == "192.0.2.5"
        assert client_ip({}, "192.0.2.9") == "192.0.2.9"
        assert client_ip({}, "testclient") == "127.0.0.1"

    def test_parse_desktop_chrome(self):
        info = parse_user_agent(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
        )
        assert info.browser == "Chrome"
        assert info.os.startswith("Windows")
        assert (info.device, info.is_mobile) == ("Desktop", False)

    def test_parse_iphone_safari(self):
        info = parse_user_agent(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
        )
        assert info.browser == "Mobile Safari"
        assert (info.os, info.device, info.is_mobile) == ("iOS", "Mobile", True)

    def test_parse_ipad_is_tablet(self):
        info = parse_user_agent(
            "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
        )
        assert (info.os, info.device, info.is_mobile) == ("iOS", "Tablet", True)

    def test_parse_unrecognised_agent(self):
        """Families the parser cannot name are reported as Unknown."""
        info = parse_user_agent("nothing recognisable")
        assert (info.browser, info.os) == ("Unknown", "Unknown")
        assert info.user_agent == "nothing recognisable"

    def test_unknown_user_agent(self):
        info = RequestMeta.from_headers({}).device_info
        assert info.browser == "Unknown"
        assert info.device == "Unknown"
