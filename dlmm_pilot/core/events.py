from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger


class EventType(StrEnum):
    POSITION_CHECK = "position_check"
    POSITION_OUT_OF_RANGE = "position_out_of_range"
    REBALANCE_STARTED = "rebalance_started"
    REBALANCE_COMPLETED = "rebalance_completed"
    REBALANCE_FAILED = "rebalance_failed"
    REBALANCE_CLOSED = "rebalance_closed"
    FEES_CLAIMED = "fees_claimed"
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"


@dataclass(frozen=True)
class Event:
    wallet_address: str
    type: EventType
    data: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


EventCallback = Callable[[Event], None] | Callable[[Event], Awaitable[None]]


class EventBus:
    """Fan-out of lifecycle events to observers.

    Subscribers may be plain or async callables. Async callbacks run as tasks so
    a slow observer never holds up the monitor. A failing subscriber is logged
    and the remaining subscribers still receive the event.
    """

    def __init__(self, *, max_history: int = 100) -> None:
        self._subscribers: list[EventCallback] = []
        self._history: list[Event] = []
        self._max_history = max_history
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, callback: EventCallback) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    @property
    def history(self) -> list[Event]:
        return list(self._history)

    def publish(
        self, wallet_address: str, event_type: EventType, data: dict[str, Any]
    ) -> Event:
        event = Event(wallet_address=wallet_address, type=event_type, data=data)
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        for callback in list(self._subscribers):
            try:
                if inspect.iscoroutinefunction(callback):
                    task = asyncio.create_task(self._run_async(callback, event))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                else:
                    callback(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Event subscriber failed on {event_type}: {exc}")
        return event

    async def _run_async(self, callback: EventCallback, event: Event) -> None:
        try:
            await callback(event)  # type: ignore[misc]
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Async event subscriber failed on {event.type}: {exc}")
