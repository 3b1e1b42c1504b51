"""Event bus — fire-and-forget broadcast of watcher events.

Event types:
  - token_detected, trading_enabled
  - sweep_initiated, sweep_completed, sweep_failed, sweep_unconfirmed
  - transaction_receipt
  - network_status_updated
  - wallet_configured, emergency_stop

Subscribers register for one wallet or for everything (``wallet=None``).
A subscriber may be a plain function or a coroutine function; coroutine
subscribers run as detached tasks. Subscriber failures are logged and
never reach the publisher.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from sweepwatch.observability.logger import get_logger

log = get_logger(__name__)

Subscriber = Callable[["Event"], Any]


@dataclass
class Event:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    wallet: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "wallet": self.wallet,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


class EventBus:
    """In-process publish/subscribe."""

    def __init__(self, history_size: int = 500):
        self._subscribers: list[tuple[str | None, Subscriber]] = []
        self._history: deque[Event] = deque(maxlen=history_size)
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, callback: Subscriber, wallet: str | None = None) -> Callable[[], None]:
        """Register ``callback``. Returns a function that unsubscribes it."""
        entry = (wallet.lower() if wallet else None, callback)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def publish(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        wallet: str | None = None,
    ) -> Event:
        event = Event(type=event_type, payload=dict(payload or {}), wallet=wallet)
        self._history.append(event)
        log.debug("events.published", event_type=event_type, wallet=wallet)

        for target, callback in list(self._subscribers):
            if target is not None and target != wallet:
                continue
            self._deliver(callback, event)
        return event

    def _deliver(self, callback: Subscriber, event: Event) -> None:
        try:
            result = callback(event)
        except Exception as e:
            log.error("events.subscriber_error", event_type=event.type, error=str(e))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("events.subscriber_error", error=str(exc))

    def history(self, event_type: str | None = None, wallet: str | None = None) -> list[Event]:
        return [
            e for e in self._history
            if (event_type is None or e.type == event_type)
            and (wallet is None or e.wallet == wallet)
        ]

    async def drain(self) -> None:
        """Wait for in-flight coroutine subscribers."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
