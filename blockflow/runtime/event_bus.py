"""
Event Bus - Pub/sub for workflow execution events.

The executor publishes run and block lifecycle events here; UIs, loggers and
tests subscribe to them. Handler failures are logged and never reach the run.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_CANCELLED = "execution_cancelled"

    # Block lifecycle
    BLOCK_STARTED = "block_started"
    BLOCK_COMPLETED = "block_completed"
    BLOCK_FAILED = "block_failed"
    BLOCK_SKIPPED = "block_skipped"

    # Group progress
    GROUP_ITERATION_STARTED = "group_iteration_started"

    CUSTOM = "custom"


@dataclass
class ExecutionEvent:
    """An event emitted by a workflow run."""

    type: EventType
    workflow_id: str
    execution_id: str | None = None
    block_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "block_id": self.block_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[ExecutionEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_workflow: str | None = None
    filter_execution: str | None = None
    filter_block: str | None = None


class EventBus:
    """
    Pub/sub event bus for execution events.

    Example:
        bus = EventBus()

        async def on_block_done(event: ExecutionEvent):
            print(f"{event.block_id} finished")

        bus.subscribe([EventType.BLOCK_COMPLETED], on_block_done)
        executor = WorkflowExecutor(graph, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[ExecutionEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_workflow: str | None = None,
        filter_execution: str | None = None,
        filter_block: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_workflow=filter_workflow,
            filter_execution=filter_execution,
            filter_block=filter_block,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: ExecutionEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if matching:
            await self._execute_handlers(event, matching)

    def _matches(self, subscription: Subscription, event: ExecutionEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_workflow and subscription.filter_workflow != event.workflow_id:
            return False
        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False
        if subscription.filter_block and subscription.filter_block != event.block_id:
            return False
        return True

    async def _execute_handlers(self, event: ExecutionEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit(
        self,
        event_type: EventType,
        workflow_id: str,
        execution_id: str | None = None,
        block_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.publish(
            ExecutionEvent(
                type=event_type,
                workflow_id=workflow_id,
                execution_id=execution_id,
                block_id=block_id,
                data=data,
            )
        )

    async def emit_execution_started(
        self, workflow_id: str, execution_id: str, input_data: Any = None
    ) -> None:
        await self.emit(
            EventType.EXECUTION_STARTED, workflow_id, execution_id, input=input_data or {}
        )

    async def emit_execution_completed(
        self, workflow_id: str, execution_id: str, output: Any = None
    ) -> None:
        await self.emit(EventType.EXECUTION_COMPLETED, workflow_id, execution_id, output=output)

    async def emit_execution_failed(
        self, workflow_id: str, execution_id: str, error: str, block_id: str | None = None
    ) -> None:
        await self.emit(
            EventType.EXECUTION_FAILED, workflow_id, execution_id, block_id=block_id, error=error
        )

    async def emit_execution_paused(
        self, workflow_id: str, execution_id: str, wait_block_info: dict | None = None
    ) -> None:
        block_id = (wait_block_info or {}).get("blockId")
        await self.emit(
            EventType.EXECUTION_PAUSED,
            workflow_id,
            execution_id,
            block_id=block_id,
            wait_block_info=wait_block_info or {},
        )

    async def emit_execution_resumed(self, workflow_id: str, execution_id: str) -> None:
        await self.emit(EventType.EXECUTION_RESUMED, workflow_id, execution_id)

    async def emit_execution_cancelled(self, workflow_id: str, execution_id: str) -> None:
        await self.emit(EventType.EXECUTION_CANCELLED, workflow_id, execution_id)

    async def emit_block_started(
        self, workflow_id: str, execution_id: str, block_id: str, block_type: str
    ) -> None:
        await self.emit(
            EventType.BLOCK_STARTED, workflow_id, execution_id, block_id=block_id, block_type=block_type
        )

    async def emit_block_completed(
        self, workflow_id: str, execution_id: str, block_id: str, output: Any = None
    ) -> None:
        await self.emit(
            EventType.BLOCK_COMPLETED, workflow_id, execution_id, block_id=block_id, output=output
        )

    async def emit_block_failed(
        self, workflow_id: str, execution_id: str, block_id: str, error: str
    ) -> None:
        await self.emit(
            EventType.BLOCK_FAILED, workflow_id, execution_id, block_id=block_id, error=error
        )

    async def emit_block_skipped(
        self, workflow_id: str, execution_id: str, block_id: str, reason: str
    ) -> None:
        await self.emit(
            EventType.BLOCK_SKIPPED, workflow_id, execution_id, block_id=block_id, reason=reason
        )

    async def emit_group_iteration_started(
        self, workflow_id: str, execution_id: str, group_id: str, iteration: int
    ) -> None:
        await self.emit(
            EventType.GROUP_ITERATION_STARTED,
            workflow_id,
            execution_id,
            block_id=group_id,
            iteration=iteration,
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        block_id: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionEvent]:
        """Event history, most recent first."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]
        if block_id:
            events = [e for e in events if e.block_id == block_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        block_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: ExecutionEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: ExecutionEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_execution=execution_id,
            filter_block=block_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
