"""
Structured migration events and the in-memory event channel.

Progress, alerts and status changes are published as immutable events on
a channel instead of being written to the console. The Progress Monitor,
report writers and any external consumer observe the same stream.

Events:
    - ProgressTick: Every ``progress_report_interval`` records
    - BatchCompleted: Every batch boundary
    - EntityStatusChanged: Entity status transitions
    - PhaseChanged: Session phase transitions
    - ValidationCompleted: A validation gate finished
    - AlertRaised: A monitor threshold was crossed
    - StatusSnapshotPublished: Periodic monitor snapshot
    - RollbackStarted / RollbackCompleted: Rollback lifecycle

Example:
    >>> channel = InMemoryEventChannel()
    >>> channel.subscribe(AlertRaised, lambda event: print(event.message))
    >>> await channel.publish(AlertRaised(session_id=session.id, ...))
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from migrationsuite.models import (
    EntityStatus,
    MigrationPhase,
    RollbackStatus,
    RollbackStrategyKind,
    RollbackTrigger,
    Severity,
    ValidationGate,
)
from migrationsuite.observability import ATTR_SESSION_ID, Tracer, create_tracer

logger = logging.getLogger(__name__)


class MigrationEvent(BaseModel):
    """
    Base class for all migration events.

    Attributes:
        event_id: Unique identifier for this event instance
        session_id: Session the event belongs to
        occurred_at: When the event occurred (UTC timestamp)
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4, description="Unique event identifier")
    session_id: UUID = Field(..., description="Migration session identifier")
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When event occurred (UTC)",
    )

    @property
    def event_type(self) -> str:
        """Type name of the event (the class name)."""
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary including the event type."""
        data = self.model_dump(mode="json")
        data["event_type"] = self.event_type
        return data


class ProgressTick(MigrationEvent):
    """Emitted every ``progress_report_interval`` records processed."""

    entity: str
    processed: int
    migrated: int
    failed: int
    total: int

    @property
    def progress_percent(self) -> float:
        """Progress of the entity as percentage."""
        if self.total == 0:
            return 100.0
        return min(100.0, self.processed / self.total * 100)


class BatchCompleted(MigrationEvent):
    """Emitted on every batch boundary."""

    entity: str
    batch_number: int
    offset: int
    rows_read: int
    rows_written: int
    rows_failed: int
    attempts: int
    duration_seconds: float
    dry_run: bool = False
    batch_failed: bool = False


class EntityStatusChanged(MigrationEvent):
    """Emitted when an entity changes status."""

    entity: str
    previous_status: EntityStatus
    status: EntityStatus
    migrated: int = 0
    failed: int = 0
    total: int = 0
    error: str | None = None


class PhaseChanged(MigrationEvent):
    """Emitted when the session moves to another phase."""

    previous_phase: MigrationPhase
    phase: MigrationPhase


class ValidationCompleted(MigrationEvent):
    """Emitted when a validation gate finishes."""

    gate: ValidationGate
    finding_count: int
    critical_count: int
    codes: tuple[str, ...] = ()


class AlertRaised(MigrationEvent):
    """Emitted when a monitored value crosses its threshold."""

    alert_type: str
    severity: Severity
    message: str
    value: float
    threshold: float


class StatusSnapshotPublished(MigrationEvent):
    """Periodic status snapshot published by the monitor."""

    snapshot: dict[str, Any]


class RollbackStarted(MigrationEvent):
    """Emitted when a rollback begins."""

    trigger: RollbackTrigger
    strategy: RollbackStrategyKind
    dry_run: bool = False


class RollbackCompleted(MigrationEvent):
    """Emitted when a rollback ends, successfully or not."""

    trigger: RollbackTrigger
    strategy: RollbackStrategyKind
    status: RollbackStatus
    records_rolled_back: int = 0
    duration_seconds: float = 0.0
    error: str | None = None


EventHandler = Callable[[MigrationEvent], Awaitable[None] | None]
"""Sync or async callable receiving an event."""


class InMemoryEventChannel:
    """
    In-memory publish/subscribe channel for migration events.

    Features:
    - Typed subscriptions (exact event class)
    - Wildcard subscriptions (receive all events)
    - Sync and async handlers
    - Error isolation (a failing handler never reaches the publisher)
    - Optional bounded history for inspection

    Example:
        >>> channel = InMemoryEventChannel(history_size=1000)
        >>> channel.subscribe(BatchCompleted, on_batch)
        >>> channel.subscribe_to_all_events(log_event)
        >>> await channel.publish(event)
    """

    def __init__(
        self,
        *,
        history_size: int = 0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the channel with an empty subscriber registry.

        Args:
            history_size: Published events retained for inspection (0 keeps none).
            tracer: Optional custom Tracer instance.
            enable_tracing: Create a tracer when none is given.
        """
        self._subscribers: dict[type[MigrationEvent], list[EventHandler]] = defaultdict(list)
        self._all_event_handlers: list[EventHandler] = []
        self._history: deque[MigrationEvent] = deque(maxlen=history_size or None)
        self._keep_history = history_size > 0
        self._stats = {
            "events_published": 0,
            "handlers_invoked": 0,
            "handler_errors": 0,
        }

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def publish(self, event: MigrationEvent) -> None:
        """
        Publish one event to every matching subscriber.

        Handlers run concurrently; failures are logged and counted but
        never propagate to the publisher.

        Args:
            event: The event to publish
        """
        handlers = list(self._subscribers.get(type(event), [])) + list(self._all_event_handlers)
        self._stats["events_published"] += 1
        if self._keep_history:
            self._history.append(event)

        if not handlers:
            return

        with self._tracer.span(
            "migrationsuite.event_channel.dispatch",
            {
                "migration.event.type": event.event_type,
                ATTR_SESSION_ID: str(event.session_id),
            },
        ):
            await asyncio.gather(*(self._safe_handle(handler, event) for handler in handlers))

    async def _safe_handle(self, handler: EventHandler, event: MigrationEvent) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
            self._stats["handlers_invoked"] += 1
        except Exception as e:
            self._stats["handler_errors"] += 1
            logger.error(
                "Handler %s failed processing %s: %s",
                name,
                event.event_type,
                e,
                exc_info=True,
                extra={"handler": name, "event_type": event.event_type},
            )

    def subscribe(self, event_type: type[MigrationEvent], handler: EventHandler) -> None:
        """
        Subscribe a handler to a specific event type.

        Args:
            event_type: The event class to subscribe to
            handler: Sync or async callable
        """
        self._subscribers[event_type].append(handler)
        logger.debug("Registered handler for %s", event_type.__name__)

    def unsubscribe(self, event_type: type[MigrationEvent], handler: EventHandler) -> bool:
        """
        Unsubscribe a handler from a specific event type.

        Returns:
            True if the handler was found and removed, False otherwise
        """
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def subscribe_to_all_events(self, handler: EventHandler) -> None:
        """Subscribe a handler to every event type (wildcard subscription)."""
        self._all_event_handlers.append(handler)

    def unsubscribe_from_all_events(self, handler: EventHandler) -> bool:
        """
        Remove a wildcard subscription.

        Returns:
            True if the handler was found and removed, False otherwise
        """
        if handler in self._all_event_handlers:
            self._all_event_handlers.remove(handler)
            return True
        return False

    def clear_subscribers(self) -> None:
        """Clear all subscribers."""
        self._subscribers.clear()
        self._all_event_handlers.clear()

    @property
    def history(self) -> list[MigrationEvent]:
        """Retained events, oldest first."""
        return list(self._history)

    def events_of(self, event_type: type[MigrationEvent]) -> list[Any]:
        """Retained events of one type, oldest first."""
        return [event for event in self._history if isinstance(event, event_type)]

    def get_stats(self) -> dict[str, int]:
        """
        Get statistics about channel operation.

        Returns:
            Dictionary with counts of events published, handlers invoked
            and handler errors.
        """
        return dict(self._stats)


__all__ = [
    "MigrationEvent",
    "ProgressTick",
    "BatchCompleted",
    "EntityStatusChanged",
    "PhaseChanged",
    "ValidationCompleted",
    "AlertRaised",
    "StatusSnapshotPublished",
    "RollbackStarted",
    "RollbackCompleted",
    "EventHandler",
    "InMemoryEventChannel",
]
