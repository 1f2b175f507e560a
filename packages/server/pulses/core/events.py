"""
Lifecycle event delivery through a transactional outbox.

Flow:
- ``record_event`` adds an outbox row inside the mutating transaction, so a
  committed write always has its event persisted alongside it
- ``dispatch_pending_events`` runs after commit, hands undispatched rows to
  the configured publisher in sequence order and stamps ``dispatched_at``
- A publisher failure leaves the row pending for the next dispatch, up to
  ``event_max_attempts`` failures; it never rolls back the write that
  produced it
"""

from __future__ import annotations

import json
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pulses.core.config import get_settings
from pulses.core.redis import get_redis
from pulses.models.event import Event

log = structlog.get_logger()

Handler = Callable[[str, dict[str, Any]], Awaitable[None]]


class EventPublisher(Protocol):
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------------


class LocalEventBus:
    """In-process bus: fans events out to registered async handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self.history: list[tuple[str, dict[str, Any]]] = []

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self.history.append((event_type, payload))
        for handler in self._handlers.get(event_type, []):
            await handler(event_type, payload)


class RedisEventPublisher:
    """Publishes events as JSON on a Redis Pub/Sub channel."""

    def __init__(self, channel: Optional[str] = None) -> None:
        self.channel = channel or get_settings().event_channel

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        redis = await get_redis()
        message = json.dumps({"type": event_type, "payload": payload})
        await redis.publish(self.channel, message)


_publisher: EventPublisher | None = None


def get_event_publisher() -> EventPublisher:
    """Process-wide publisher selected by the ``event_backend`` setting."""
    global _publisher
    if _publisher is None:
        if get_settings().event_backend == "redis":
            _publisher = RedisEventPublisher()
        else:
            _publisher = LocalEventBus()
    return _publisher


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------


def record_event(
    session: AsyncSession,
    event_type: str,
    payload: dict[str, Any],
    actor_id: int | None = None,
) -> Event:
    """Stage an outbox row in the current transaction."""
    event = Event(type=event_type, actor_id=actor_id, payload=payload)
    session.add(event)
    return event


async def dispatch_pending_events(
    session: AsyncSession,
    publisher: EventPublisher | None = None,
    limit: int | None = None,
    max_attempts: int | None = None,
) -> int:
    """Publish undispatched outbox rows in order. Returns the number delivered.

    Rows are locked with ``SKIP LOCKED`` so concurrent dispatchers never
    publish the same row. Dispatch stops at the first publisher failure so
    ordering is preserved; the failed row and everything after it stay
    pending. A row that has failed ``max_attempts`` times is abandoned and
    no longer blocks the rows behind it.
    """
    publisher = publisher or get_event_publisher()
    settings = get_settings()
    limit = limit or settings.event_dispatch_batch_size
    max_attempts = max_attempts or settings.event_max_attempts

    result = await session.execute(
        select(Event)
        .where(Event.dispatched_at.is_(None), Event.attempts < max_attempts)
        .order_by(Event.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    events = result.scalars().all()

    delivered = 0
    for event in events:
        try:
            await publisher.publish(event.type, event.payload)
        except Exception as exc:
            event.attempts += 1
            session.add(event)
            if event.attempts >= max_attempts:
                log.error(
                    "events.abandoned",
                    event_id=event.id,
                    event_type=event.type,
                    attempts=event.attempts,
                    error=str(exc),
                )
                continue
            log.warning(
                "events.dispatch_failed",
                event_id=event.id,
                event_type=event.type,
                attempts=event.attempts,
                error=str(exc),
            )
            break
        event.dispatched_at = datetime.now(timezone.utc)
        session.add(event)
        delivered += 1

    await session.commit()
    if delivered:
        log.info("events.dispatched", count=delivered)
    return delivered
