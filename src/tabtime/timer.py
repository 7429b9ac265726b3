"""Named periodic timers that deliver ticks to registered handlers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

TickHandler = Callable[[str], None]


class _HandlerRegistry:
    """Handler bookkeeping shared by the timer implementations."""

    def __init__(self) -> None:
        self._handlers: list[TickHandler] = []
        self._handlers_lock = threading.Lock()

    def on_tick(self, handler: TickHandler) -> None:
        """Register a handler called with the timer name on every tick."""
        with self._handlers_lock:
            self._handlers.append(handler)

    def off_tick(self, handler: TickHandler) -> None:
        """Remove a handler. Unknown handlers are ignored."""
        with self._handlers_lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    @property
    def handler_count(self) -> int:
        with self._handlers_lock:
            return len(self._handlers)

    def _dispatch(self, name: str) -> None:
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(name)
            except Exception:
                # One failing handler must not starve the others
                logger.exception("Tick handler failed for timer %s", name)


class ManualTimer(_HandlerRegistry):
    """Timer whose ticks are delivered only by calling fire().

    Used for one-shot runs and tests.
    """

    def __init__(self) -> None:
        super().__init__()
        self.schedules: dict[str, float] = {}

    def schedule(self, name: str, period_minutes: float) -> None:
        self.schedules[name] = period_minutes

    def cancel(self, name: str) -> bool:
        return self.schedules.pop(name, None) is not None

    def fire(self, name: str) -> None:
        """Deliver one tick for ``name`` synchronously."""
        self._dispatch(name)


class ThreadTimer(_HandlerRegistry):
    """Timer backed by one daemon thread per scheduled name.

    Scheduling a name that is already scheduled replaces the previous
    thread, so there is never more than one timer per name. Cancelling
    waits up to ``join_timeout`` seconds for a tick that is being delivered,
    so handlers are finished before their resources are torn down.
    """

    def __init__(self, join_timeout: float | None = 30.0) -> None:
        super().__init__()
        self._join_timeout = join_timeout
        self._timers: dict[str, tuple[threading.Thread, threading.Event]] = {}
        self._timers_lock = threading.Lock()

    def schedule(self, name: str, period_minutes: float) -> None:
        if period_minutes <= 0:
            raise ValueError(f"period_minutes must be positive, got {period_minutes}")
        self.cancel(name)
        stop = threading.Event()
        thread = threading.Thread(
            target=self._loop,
            args=(name, period_minutes * 60, stop),
            name=f"timer-{name}",
            daemon=True,
        )
        with self._timers_lock:
            self._timers[name] = (thread, stop)
            thread.start()
        logger.debug("Scheduled timer %s every %s minutes", name, period_minutes)

    def cancel(self, name: str) -> bool:
        with self._timers_lock:
            entry = self._timers.pop(name, None)
        if entry is None:
            return False
        thread, stop = entry
        stop.set()
        # A handler may cancel its own timer
        if thread is not threading.current_thread():
            thread.join(self._join_timeout)
            if thread.is_alive():
                logger.warning("Timer %s still running after %ss", name, self._join_timeout)
        logger.debug("Cancelled timer %s", name)
        return True

    def cancel_all(self) -> None:
        with self._timers_lock:
            names = list(self._timers)
        for name in names:
            self.cancel(name)

    def _loop(self, name: str, period_seconds: float, stop: threading.Event) -> None:
        while not stop.wait(period_seconds):
            self._dispatch(name)
