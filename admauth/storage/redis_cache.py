from __future__ import annotations

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis

from admauth.logging import get_logger

logger = get_logger(__name__)

FORCE_LOGOUT_CHANNEL = "auth:force_logout"


def _decode_event(message: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not message or message.get("type") != "message":
        return None
    try:
        payload = json.loads(message["data"])
    except (TypeError, ValueError):
        logger.warning("force_logout_message_undecodable")
        return None
    return payload if isinstance(payload, dict) else None


def _token_digest(token: str) -> str:
    # Credential tokens are bearer secrets; keys only ever hold a digest
    return hashlib.sha256(token.encode()).hexdigest()


class RedisCache:
    """Thin Redis wrapper for revocation markers, 2FA challenges and
    force-logout fan-out."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_credential_revoked(self, credential_token: str, expires_at: datetime) -> None:
        await self.client.set(
            f"auth:revoked:{_token_digest(credential_token)}",
            "1",
            ex=self._ttl_seconds(expires_at),
        )

    async def is_credential_revoked(self, credential_token: str) -> bool:
        return bool(
            await self.client.exists(f"auth:revoked:{_token_digest(credential_token)}")
        )

    async def set_two_factor_challenge(self, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:2fa_pending:{user_id}", "1", ex=max(1, ttl_seconds))

    async def has_two_factor_challenge(self, user_id: str) -> bool:
        return bool(await self.client.exists(f"auth:2fa_pending:{user_id}"))

    async def clear_two_factor_challenge(self, user_id: str) -> None:
        await self.client.delete(f"auth:2fa_pending:{user_id}")

    async def publish_force_logout(self, event: Dict[str, Any]) -> int:
        return int(await self.client.publish(FORCE_LOGOUT_CHANNEL, json.dumps(event)))

    async def force_logout_messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield force-logout payloads published on the shared channel."""
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(FORCE_LOGOUT_CHANNEL)
        try:
            async for message in pubsub.listen():
                payload = _decode_event(message)
                if payload is not None:
                    yield payload
        finally:
            await pubsub.unsubscribe(FORCE_LOGOUT_CHANNEL)
            await pubsub.aclose()

    async def close(self) -> None:
        """Close the connection pool; call on shutdown or runtime reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper used in tests.

    A sync client avoids binding connections to the per-request event loops
    that ``TestClient`` creates, while the methods stay awaitable so callers
    treat both caches the same way.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def mark_credential_revoked(self, credential_token: str, expires_at: datetime) -> None:
        self.client.set(
            f"auth:revoked:{_token_digest(credential_token)}",
            "1",
            ex=RedisCache._ttl_seconds(expires_at),
        )

    async def is_credential_revoked(self, credential_token: str) -> bool:
        return bool(self.client.exists(f"auth:revoked:{_token_digest(credential_token)}"))

    async def set_two_factor_challenge(self, user_id: str, ttl_seconds: int) -> None:
        self.client.set(f"auth:2fa_pending:{user_id}", "1", ex=max(1, ttl_seconds))

    async def has_two_factor_challenge(self, user_id: str) -> bool:
        return bool(self.client.exists(f"auth:2fa_pending:{user_id}"))

    async def clear_two_factor_challenge(self, user_id: str) -> None:
        self.client.delete(f"auth:2fa_pending:{user_id}")

    async def publish_force_logout(self, event: Dict[str, Any]) -> int:
        return int(self.client.publish(FORCE_LOGOUT_CHANNEL, json.dumps(event)))

    async def force_logout_messages(self) -> AsyncIterator[Dict[str, Any]]:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(FORCE_LOGOUT_CHANNEL)
        try:
            while True:
                # Blocking reads run off the event loop
                message = await asyncio.to_thread(pubsub.get_message, timeout=1.0)
                payload = _decode_event(message)
                if payload is not None:
                    yield payload
        finally:
            pubsub.close()

    async def close(self) -> None:
        self.client.close()
