"""Fire-and-forget activity heartbeat for an admitted session."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("memberportal.heartbeat")

DEFAULT_INTERVAL = 120.0
DEFAULT_DEBOUNCE = 30.0
DEFAULT_WARNING_INTERVAL = 60.0

INTERACTION_EVENTS = frozenset(
    {
        "mousedown",
        "mousemove",
        "pointerdown",
        "keydown",
        "keypress",
        "scroll",
        "touchstart",
    }
)


class ActivityHeartbeat:
    """Ping ``send`` immediately, every ``interval`` seconds, and after interaction.

    Interaction pings are debounced: each call to :meth:`notify_interaction`
    cancels the pending ping and schedules a new one ``debounce`` seconds out.
    Failures never propagate; they are logged at most once per
    ``warning_interval`` seconds.
    """

    def __init__(
        self,
        send: Callable[[], Awaitable[None]],
        *,
        interval: float = DEFAULT_INTERVAL,
        debounce: float = DEFAULT_DEBOUNCE,
        warning_interval: float = DEFAULT_WARNING_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0 or debounce <= 0:
            raise ValueError("Heartbeat interval and debounce must be positive")
        self._send = send
        self._interval = interval
        self._debounce = debounce
        self._warning_interval = warning_interval
        self._clock = clock
        self._interval_task: Optional[asyncio.Task[None]] = None
        self._debounce_task: Optional[asyncio.Task[None]] = None
        self._last_warning: Optional[float] = None
        self.pings = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._interval_task is not None and not self._interval_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._interval_task = asyncio.get_running_loop().create_task(self._run_interval())

    def notify_interaction(self, kind: str = "pointerdown") -> None:
        if not self.running or kind not in INTERACTION_EVENTS:
            return
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = asyncio.get_running_loop().create_task(self._run_debounced())

    async def stop(self) -> None:
        tasks = [task for task in (self._interval_task, self._debounce_task) if task is not None]
        self._interval_task = None
        self._debounce_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    async def ping(self) -> None:
        self.pings += 1
        try:
            await self._send()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - heartbeat failures are never surfaced
            self.failures += 1
            now = self._clock()
            if self._last_warning is None or now - self._last_warning >= self._warning_interval:
                self._last_warning = now
                logger.warning("Activity heartbeat failed: %s", exc)

    async def _run_interval(self) -> None:
        await self.ping()
        while True:
            await asyncio.sleep(self._interval)
            await self.ping()

    async def _run_debounced(self) -> None:
        await asyncio.sleep(self._debounce)
        await self.ping()


__all__ = [
    "ActivityHeartbeat",
    "DEFAULT_DEBOUNCE",
    "DEFAULT_INTERVAL",
    "DEFAULT_WARNING_INTERVAL",
    "INTERACTION_EVENTS",
]
