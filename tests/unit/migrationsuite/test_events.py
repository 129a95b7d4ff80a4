"""
Unit tests for migration events and InMemoryEventChannel.
"""

from uuid import uuid4

import pytest
from pydantic import ValidationError

from migrationsuite.events import (
    AlertRaised,
    InMemoryEventChannel,
    MigrationEvent,
    PhaseChanged,
    ProgressTick,
)
from migrationsuite.models import MigrationPhase, Severity

SESSION_ID = uuid4()


def tick(processed: int = 10) -> ProgressTick:
    return ProgressTick(
        session_id=SESSION_ID,
        entity="customers",
        processed=processed,
        migrated=processed,
        failed=0,
        total=40,
    )


class TestEvents:
    """Tests for event models."""

    def test_events_are_immutable(self) -> None:
        event = tick()

        with pytest.raises(ValidationError):
            event.processed = 20  # type: ignore[misc]

    def test_to_dict_carries_event_type(self) -> None:
        data = tick().to_dict()

        assert data["event_type"] == "ProgressTick"
        assert data["session_id"] == str(SESSION_ID)
        assert data["processed"] == 10

    def test_enums_serialize_to_values(self) -> None:
        event = PhaseChanged(
            session_id=SESSION_ID,
            previous_phase=MigrationPhase.PENDING,
            phase=MigrationPhase.PRE_VALIDATION,
        )

        assert event.to_dict()["phase"] == "pre_validation"

    def test_progress_percent(self) -> None:
        assert tick(10).progress_percent == 25.0


class TestInMemoryEventChannel:
    """Tests for subscriptions and dispatch."""

    @pytest.fixture
    def channel(self) -> InMemoryEventChannel:
        return InMemoryEventChannel(history_size=10, enable_tracing=False)

    @pytest.mark.asyncio
    async def test_typed_subscription(self, channel: InMemoryEventChannel) -> None:
        received: list[MigrationEvent] = []
        channel.subscribe(ProgressTick, received.append)

        await channel.publish(tick())
        await channel.publish(
            AlertRaised(
                session_id=SESSION_ID,
                alert_type="MEMORY_USAGE_HIGH",
                severity=Severity.WARNING,
                message="high",
                value=0.9,
                threshold=0.8,
            )
        )

        assert [event.event_type for event in received] == ["ProgressTick"]

    @pytest.mark.asyncio
    async def test_wildcard_and_async_handlers(self, channel: InMemoryEventChannel) -> None:
        received: list[str] = []

        async def on_event(event: MigrationEvent) -> None:
            received.append(event.event_type)

        channel.subscribe_to_all_events(on_event)
        await channel.publish(tick())

        assert received == ["ProgressTick"]
        assert channel.unsubscribe_from_all_events(on_event)
        assert not channel.unsubscribe_from_all_events(on_event)

    @pytest.mark.asyncio
    async def test_handler_errors_are_isolated(self, channel: InMemoryEventChannel) -> None:
        received: list[MigrationEvent] = []

        def broken(event: MigrationEvent) -> None:
            raise RuntimeError("handler bug")

        channel.subscribe(ProgressTick, broken)
        channel.subscribe(ProgressTick, received.append)

        await channel.publish(tick())

        assert len(received) == 1
        stats = channel.get_stats()
        assert stats["handler_errors"] == 1
        assert stats["handlers_invoked"] == 1
        assert stats["events_published"] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, channel: InMemoryEventChannel) -> None:
        received: list[MigrationEvent] = []
        channel.subscribe(ProgressTick, received.append)

        assert channel.unsubscribe(ProgressTick, received.append)
        await channel.publish(tick())

        assert received == []
        assert not channel.unsubscribe(ProgressTick, received.append)

    @pytest.mark.asyncio
    async def test_history_is_bounded(self) -> None:
        channel = InMemoryEventChannel(history_size=3, enable_tracing=False)

        for processed in range(5):
            await channel.publish(tick(processed))

        assert [event.processed for event in channel.events_of(ProgressTick)] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_no_history_by_default(self) -> None:
        channel = InMemoryEventChannel(enable_tracing=False)

        await channel.publish(tick())

        assert channel.history == []

    @pytest.mark.asyncio
    async def test_clear_subscribers(self, channel: InMemoryEventChannel) -> None:
        received: list[MigrationEvent] = []
        channel.subscribe(ProgressTick, received.append)
        channel.subscribe_to_all_events(received.append)

        channel.clear_subscribers()
        await channel.publish(tick())

        assert received == []
