from __future__ import annotations

import asyncio
import itertools
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from admauth.logging import get_logger
from admauth.storage.models import utcnow

logger = get_logger(__name__)

ALL = "all"
_QUEUE_LIMIT = 100


@dataclass(frozen=True)
class ForceLogoutEvent:
    user_id: str
    session_token: str
    reason: str
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    def targets(self, user_id: str, session_token: Optional[str]) -> bool:
        """True when the event terminates the given client session."""
        if self.user_id not in (ALL, user_id):
            return False
        return self.session_token == ALL or self.session_token == session_token

    def as_payload(self) -> dict:
        data = asdict(self)
        return {
            "type": "force_logout",
            "userId": data["user_id"],
            "sessionToken": data["session_token"],
            "reason": data["reason"],
            "timestamp": data["timestamp"],
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ForceLogoutEvent":
        return cls(
            user_id=str(payload["userId"]),
            session_token=str(payload.get("sessionToken") or ALL),
            reason=str(payload.get("reason") or "force_logout"),
            timestamp=str(payload.get("timestamp") or utcnow().isoformat()),
        )


@dataclass
class Subscription:
    id: int
    user_id: str
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop

    async def next_event(self) -> ForceLogoutEvent:
        return await self.queue.get()


class ForceLogoutBroadcaster:
    """Pub/sub for session invalidation keyed by user id.

    Subscribers are websocket handlers running on some event loop; publishers
    may run on another loop or thread, so events are handed to each
    subscriber's loop with ``call_soon_threadsafe``. When a Redis cache is
    configured, every event is also published to the shared channel, tagged
    with this instance's ``origin`` so that ``relay`` delivers only events
    raised by other workers.
    """

    def __init__(self, cache=None) -> None:
        self.cache = cache
        self.origin = uuid.uuid4().hex
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: Dict[str, Dict[int, Subscription]] = {}

    def subscribe(self, user_id: str) -> Subscription:
        sub = Subscription(
            id=next(self._ids),
            user_id=user_id,
            queue=asyncio.Queue(maxsize=_QUEUE_LIMIT),
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscribers.setdefault(user_id, {})[sub.id] = sub
        logger.debug("force_logout_subscribed", user_id=user_id, subscription=sub.id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            bucket = self._subscribers.get(sub.user_id)
            if bucket is None:
                return
            bucket.pop(sub.id, None)
            if not bucket:
                self._subscribers.pop(sub.user_id, None)

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is None:
                return sum(len(b) for b in self._subscribers.values())
            return len(self._subscribers.get(user_id, {}))

    def _recipients(self, user_id: str) -> List[Subscription]:
        with self._lock:
            if user_id == ALL:
                return [s for b in self._subscribers.values() for s in b.values()]
            return list(self._subscribers.get(user_id, {}).values())

    @staticmethod
    def _deliver(sub: Subscription, event: ForceLogoutEvent) -> None:
        try:
            sub.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "force_logout_queue_full", user_id=sub.user_id, subscription=sub.id
            )

    def _fan_out(self, event: ForceLogoutEvent) -> int:
        recipients = self._recipients(event.user_id)
        delivered = 0
        for sub in recipients:
            if sub.loop.is_closed():
                self.unsubscribe(sub)
                continue
            sub.loop.call_soon_threadsafe(self._deliver, sub, event)
            delivered += 1
        return delivered

    async def publish(
        self, user_id: str, session_token: str = ALL, *, reason: str = "force_logout"
    ) -> ForceLogoutEvent:
        event = ForceLogoutEvent(user_id=user_id, session_token=session_token, reason=reason)
        recipients = self._fan_out(event)
        if self.cache is not None:
            try:
                await self.cache.publish_force_logout(
                    {**event.as_payload(), "origin": self.origin}
                )
            except Exception as exc:
                # Local subscribers were already notified; the store remains
                # the source of truth for session validity
                logger.warning("force_logout_redis_publish_failed", error=str(exc))
        logger.info(
            "force_logout_published",
            user_id=user_id,
            reason=reason,
            recipients=recipients,
        )
        return event

    def receive_remote(self, payload: Dict[str, Any]) -> Optional[ForceLogoutEvent]:
        """Deliver an event published by another worker to local subscribers.

        Returns ``None`` for this instance's own events and for payloads that
        are not force-logout events.
        """
        if payload.get("origin") == self.origin:
            return None
        if payload.get("type") != "force_logout":
            return None
        try:
            event = ForceLogoutEvent.from_payload(payload)
        except KeyError:
            logger.warning("force_logout_remote_payload_invalid")
            return None
        recipients = self._fan_out(event)
        logger.info(
            "force_logout_relayed",
            user_id=event.user_id,
            reason=event.reason,
            recipients=recipients,
        )
        return event

    async def relay(self, payloads: AsyncIterator[Dict[str, Any]]) -> None:
        async for payload in payloads:
            self.receive_remote(payload)
