"""
Plate Server Change Bus

In-process publication of committed ledger changes. Station displays, the
admin dashboard feed and tests subscribe here to learn that a record moved,
a session was replaced or the directory was re-synced.

=============================================================================
PRINCIPLES
=============================================================================

1. THE BUS RECORDS FACTS
   - Events are emitted only AFTER the SQLite transaction has committed
   - "ledger:served" means plates were served, not "please serve plates"
   - A rejected or conflicting operation emits nothing

2. EVENTS ARE IMMUTABLE
   - Once emitted, an event cannot be changed
   - Handlers receive events, they cannot modify them

3. EMIT IS SYNCHRONOUS AND ORDERED
   - Sequence numbers are assigned under a lock, so they stay unique and
     monotonic even when FastAPI runs sync handlers in its threadpool

4. HANDLERS CANNOT BREAK THE LEDGER
   - A handler that raises is logged and skipped
   - The change it was told about is already durable

The audit log (see ``plate_server.audit``) remains the authoritative record.
The bus keeps only a bounded in-memory history for live feeds and debugging.

=============================================================================
USAGE
=============================================================================

    from plate_server.core.bus import bus
    from plate_server.core.events import Events

    def on_served(event):
        print(f"{event.detail['family_id']} now has {event.detail['remaining']} left")

    unsubscribe = bus.on(Events.LEDGER_SERVED, on_served)

    # Later: stop listening
    unsubscribe()

=============================================================================
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import deque
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# TYPE ALIASES
# =============================================================================

SyncHandler = Callable[["ChangeEvent"], None]
AsyncHandler = Callable[["ChangeEvent"], Coroutine[Any, Any, None]]
EventHandler = SyncHandler | AsyncHandler
Unsubscribe = Callable[[], None]


# =============================================================================
# EVENT METADATA
# =============================================================================


@dataclass(frozen=True)
class EventMetadata:
    """
    Metadata attached to every event.

    Attributes:
        timestamp: Unix epoch milliseconds (UTC). For display only.
        source: Component that emitted the event ("ledger", "sessions",
                "reconciliation").
        sequence: Monotonically increasing integer. The only reliable way to
                  order events.
    """

    timestamp: int
    source: str
    sequence: int

    @staticmethod
    def create(source: str, sequence: int) -> EventMetadata:
        now_ms = int(datetime.now(UTC).timestamp() * 1000)
        return EventMetadata(timestamp=now_ms, source=source, sequence=sequence)


# =============================================================================
# CHANGE EVENT
# =============================================================================


@dataclass(frozen=True)
class ChangeEvent:
    """
    A single committed change.

    Attributes:
        type: Event type in "domain:action" past-tense form, for example
              "ledger:served". See :class:`plate_server.core.events.Events`.
        detail: Event payload. Treat as immutable.
        _meta: Event metadata (timestamp, source, sequence).
    """

    type: str
    detail: dict = field(default_factory=dict)
    _meta: EventMetadata | None = field(default=None)

    def __str__(self) -> str:
        if self._meta:
            return (
                f"ChangeEvent(type='{self.type}', "
                f"source='{self._meta.source}', "
                f"seq={self._meta.sequence})"
            )
        return f"ChangeEvent(type='{self.type}')"

    @property
    def meta(self) -> EventMetadata | None:
        """Public accessor for event metadata."""
        return self._meta


# =============================================================================
# CHANGE BUS (SINGLETON)
# =============================================================================


class ChangeBus:
    """
    The process-wide change bus (singleton).

    Thread Safety:
    - Sequence assignment, the event log and the handler registry are guarded
      by one lock.
    - Handlers are called OUTSIDE the lock, on the emitting thread, so a slow
      handler never blocks other emitters from getting their sequence number.

    Key Methods:
    - emit(): Record a committed change and notify handlers
    - on(): Subscribe to an event type (returns unsubscribe function)
    - once(): Subscribe for a single event only
    - get_event_log(): Recent history, oldest first
    """

    _instance: ChangeBus | None = None
    _initialized: bool = False

    def __new__(cls) -> ChangeBus:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if ChangeBus._initialized:
            return

        self._lock = threading.Lock()

        # event_type -> handlers, in registration order
        self._handlers: dict[str, list[EventHandler]] = {}

        # Bounded history; the audit log is the durable record
        self._event_log: deque[ChangeEvent] = deque(maxlen=5000)

        self._sequence: int = 0

        self.debug: bool = False

        ChangeBus._initialized = True
        logger.info("Change bus initialized")

    # =========================================================================
    # EMIT
    # =========================================================================

    def emit(
        self, event_type: str, detail: dict[str, Any] | None = None, source: str = "ledger"
    ) -> ChangeEvent:
        """
        Emit a committed change to the bus.

        Callers emit only after their write transaction has committed. When
        this returns, the event carries its sequence number, sits in the log
        and every sync handler has run.

        Args:
            event_type: Event type (see ``Events``).
            detail: Event payload. Defaults to an empty dict.
            source: Emitting component, used for debugging.

        Returns:
            The committed ChangeEvent.
        """
        with self._lock:
            self._sequence += 1
            event = ChangeEvent(
                type=event_type,
                detail=detail if detail is not None else {},
                _meta=EventMetadata.create(source, self._sequence),
            )
            self._event_log.append(event)
            handlers = list(self._handlers.get(event_type, ()))

        if self.debug:
            logger.debug("EMIT [%s]: %s from %s", event.meta.sequence, event.type, source)

        self._notify_handlers(event, handlers)
        return event

    def _notify_handlers(self, event: ChangeEvent, handlers: list[EventHandler]) -> None:
        """
        Call handlers in registration order.

        Errors are logged and do not stop the remaining handlers. Async
        handlers are scheduled on the running loop, or run to completion
        when called from a thread without one.
        """
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    self._schedule_async_handler(handler, event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"Handler error for '{event.type}': {e}", exc_info=True)

    def _schedule_async_handler(self, handler: AsyncHandler, event: ChangeEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(handler(event))
        except RuntimeError:
            # No running loop: threadpool worker or test
            asyncio.run(handler(event))

    # =========================================================================
    # SUBSCRIBE
    # =========================================================================

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """
        Subscribe to an event type.

        Args:
            event_type: Event type to listen for.
            handler: Sync or async callable receiving the ChangeEvent.

        Returns:
            An unsubscribe function.
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            count = len(self._handlers[event_type])

        if self.debug:
            logger.debug(f"SUBSCRIBE: '{event_type}' (total handlers: {count})")

        def unsubscribe() -> None:
            with self._lock:
                try:
                    self._handlers.get(event_type, []).remove(handler)
                except ValueError:
                    # Already removed
                    pass

        return unsubscribe

    def once(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe for the next event of ``event_type`` only."""
        unsub: Unsubscribe | None = None

        def one_time_wrapper(event: ChangeEvent) -> None:
            try:
                if inspect.iscoroutinefunction(handler):
                    self._schedule_async_handler(handler, event)
                else:
                    handler(event)
            finally:
                if unsub is not None:
                    unsub()

        unsub = self.on(event_type, one_time_wrapper)
        return unsub

    # =========================================================================
    # EVENT LOG ACCESS
    # =========================================================================

    def get_event_log(self, limit: int | None = None, event_type: str | None = None) -> list[ChangeEvent]:
        """
        Return recent events, oldest first.

        Args:
            limit: Maximum number of events to return (from the end).
            event_type: Only return events of this type.
        """
        with self._lock:
            events = list(self._event_log)
        if event_type is not None:
            events = [event for event in events if event.type == event_type]
        if limit is not None:
            return events[-limit:]
        return events

    def get_sequence(self) -> int:
        """Return the last assigned sequence number."""
        return self._sequence

    def get_handler_count(self, event_type: str) -> int:
        """Return the number of handlers subscribed to ``event_type``."""
        with self._lock:
            return len(self._handlers.get(event_type, ()))

    # =========================================================================
    # TESTING SUPPORT
    # =========================================================================

    @classmethod
    def reset_for_testing(cls) -> None:
        """
        Reset the singleton for testing.

        *** NOT FOR PRODUCTION USE ***
        """
        cls._instance = None
        cls._initialized = False

    def clear_event_log(self) -> None:
        """Erase the in-memory history."""
        with self._lock:
            self._event_log.clear()


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

# Usage: from plate_server.core.bus import bus
bus = ChangeBus()
