"""Execution lifecycle notifications.

The engine emits three events through a :class:`Notifier`:

- ``process_started``: a session or one-off engine process was spawned
- ``execution_started``: an execution's commands were transmitted
- ``execution_completed``: the Completion Router finished with it

An external history module can subscribe in-process, or follow the Redis
Stream that :class:`RedisEventPublisher` appends to with :class:`EventFollower`.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)

PROCESS_STARTED = "process_started"
EXECUTION_STARTED = "execution_started"
EXECUTION_COMPLETED = "execution_completed"
LIFECYCLE_EVENTS = (PROCESS_STARTED, EXECUTION_STARTED, EXECUTION_COMPLETED)

EVENT_VERSION = 1  # Bump when payload shape changes
EVENTS_STREAM = "sqlblocks:events"

EventHandler = Callable[[dict[str, Any]], None]


def build_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    session: str | None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Payload shared by in-process handlers and the Redis Stream."""
    event: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "session": session,
        "status": status,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    return event


class Notifier:
    """Dispatches lifecycle events to registered handlers.

    Handler failures are logged and never reach the emitter: the emitter is
    a session pump that must keep serving its queue.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type."""
        if event_type not in LIFECYCLE_EVENTS:
            raise ValueError(f"Unknown lifecycle event: {event_type}")
        self._handlers.setdefault(event_type, []).append(handler)

    def remove(self, event_type: str, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(
        self,
        event_type: str,
        entity_id: str,
        status: str,
        *,
        session: str | None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        event = build_event(event_type, entity_id, status, session=session, extra=extra)
        for handler in list(self._handlers.get(event_type, [])):
            try:
                handler(event)
            except Exception:
                log.exception("Lifecycle handler error for %s", event_type)
        return event


class RedisEventPublisher:
    """Appends lifecycle events to a Redis Stream. Best-effort, never raises RedisError."""

    def __init__(self, url: str, *, maxlen: int = 1000, stream: str = EVENTS_STREAM) -> None:
        self._pool = ConnectionPool.from_url(url)
        self.maxlen = maxlen
        self.stream = stream

    def get_redis(self) -> Redis:
        return Redis(connection_pool=self._pool)

    def publish(self, event: dict[str, Any]) -> None:
        payload = json.dumps(event, default=str)
        try:
            self.get_redis().xadd(
                self.stream, {"data": payload}, maxlen=self.maxlen, approximate=True
            )
        except RedisError:
            log.warning(
                "Event publish failed (Redis unavailable): %s %s",
                event.get("type"),
                event.get("id"),
            )

    def attach(self, notifier: Notifier) -> None:
        for event_type in LIFECYCLE_EVENTS:
            notifier.on(event_type, self.publish)


def decode_event(entry_id: Any, fields: dict) -> dict[str, Any] | None:
    """Stream entry -> event dict with its ``stream_id``; None if it is not one of ours."""
    data = fields.get("data") or fields.get(b"data")
    if isinstance(data, bytes):
        data = data.decode()
    try:
        event = json.loads(data) if data else None
    except json.JSONDecodeError:
        log.debug("Skipping malformed stream entry %r", entry_id)
        return None
    if not isinstance(event, dict) or event.get("type") not in LIFECYCLE_EVENTS:
        return None
    event["stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
    return event


@dataclass(frozen=True, slots=True)
class EventFilter:
    """Selects events by session, execution id and event type."""

    session: str | None = None
    exec_id: str | None = None
    types: frozenset[str] = frozenset(LIFECYCLE_EVENTS)

    def matches(self, event: dict[str, Any]) -> bool:
        if event.get("type") not in self.types:
            return False
        if self.session is not None and event.get("session") != self.session:
            return False
        return self.exec_id is None or event.get("id") == self.exec_id

    def is_last(self, event: dict[str, Any]) -> bool:
        """True when *event* completes the single execution being followed."""
        return self.exec_id is not None and event.get("type") == EXECUTION_COMPLETED


class EventFollower:
    """Reads lifecycle events back from the Redis Stream with ``XREAD BLOCK``.

    Following ends after *idle_timeout* seconds without a new stream entry,
    after *limit* matching events, or once a followed execution completed.
    """

    def __init__(
        self,
        redis: Redis,
        event_filter: EventFilter | None = None,
        *,
        idle_timeout: float = 30.0,
        from_start: bool = False,
        stream: str = EVENTS_STREAM,
    ) -> None:
        self.redis = redis
        self.filter = event_filter or EventFilter()
        self.idle_timeout = idle_timeout
        self.stream = stream
        self.cursor = "0" if from_start else "$"

    def available(self) -> bool:
        try:
            self.redis.ping()
        except RedisError:
            return False
        return True

    def follow(self, limit: int = 0) -> Iterator[dict[str, Any]]:
        """Yield matching events in stream order. Raises ``RedisError`` on transport failure."""
        block_ms = max(1, int(self.idle_timeout * 1000))
        seen = 0
        while True:
            reply = self.redis.xread({self.stream: self.cursor}, block=block_ms, count=100)
            if not reply:
                return
            for _stream, entries in reply:
                for entry_id, fields in entries:
                    event = decode_event(entry_id, fields)
                    self.cursor = entry_id
                    if event is None or not self.filter.matches(event):
                        continue
                    yield event
                    seen += 1
                    if seen == limit or self.filter.is_last(event):
                        return
