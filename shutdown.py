#!/usr/bin/env python3
"""
Shutdown coordination for L4Proxy

RUNNING -> DRAINING on a termination signal, an idle timeout (no new
connection accepted for connection_timeout seconds) or an explicit request.
DRAINING closes the listener and lets in-flight relays finish.
DRAINING -> STOPPED once nothing is in flight.
"""

import asyncio
import platform
import signal
import time
from enum import Enum
from typing import List, Optional

from connection_relay import ActiveConnectionSet
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)

# Time allowed for cancelled relays to unwind after the drain deadline
CANCEL_GRACE = 5.0


class ShutdownState(Enum):
    RUNNING = "RUNNING"
    DRAINING = "DRAINING"
    STOPPED = "STOPPED"


class ShutdownCoordinator:
    """Watches for shutdown triggers and drains the proxy"""

    def __init__(self, listener, active: ActiveConnectionSet,
                 idle_timeout: Optional[float] = None,
                 drain_timeout: Optional[float] = None,
                 wait_for_drain: bool = True):
        self.listener = listener
        self.active = active
        self.idle_timeout = idle_timeout
        self.drain_timeout = drain_timeout
        self.wait_for_drain = wait_for_drain

        self.state = ShutdownState.RUNNING
        self.reason: Optional[str] = None
        self._last_activity = time.monotonic()
        self._requested: Optional[asyncio.Event] = None
        self._stopped: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._signals: List[int] = []
        self._previous_handlers = {}

    def _requested_event(self) -> asyncio.Event:
        if self._requested is None:
            self._requested = asyncio.Event()
        return self._requested

    def _stopped_event(self) -> asyncio.Event:
        if self._stopped is None:
            self._stopped = asyncio.Event()
        return self._stopped

    def _transition(self, new_state: ShutdownState):
        logger.info(f"Shutdown state {self.state.value} -> {new_state.value}")
        self.state = new_state

    def notify_activity(self, *_):
        """Reset the idle timer; called on every accepted connection"""
        self._last_activity = time.monotonic()

    def request_shutdown(self, reason: str):
        """Enter DRAINING as soon as run() notices. Later requests are ignored."""
        if self.reason is not None:
            logger.debug(f"Shutdown already requested ({self.reason}), ignoring {reason}")
            return
        self.reason = reason
        self._requested_event().set()

    def install_signal_handlers(self):
        """Route SIGINT/SIGTERM into request_shutdown()"""
        self._loop = asyncio.get_running_loop()
        signals = [signal.SIGINT]
        if platform.system() == 'Windows':
            signals.append(signal.SIGBREAK)
        else:
            signals.append(signal.SIGTERM)

        for sig in signals:
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # No loop integration (Windows): fall back to a plain handler
                try:
                    self._previous_handlers[sig] = signal.signal(sig, self._on_sync_signal)
                except ValueError:
                    logger.warning(f"Cannot handle {signal.Signals(sig).name} outside the main thread")
                    continue
            self._signals.append(sig)

    def remove_signal_handlers(self):
        for sig in self._signals:
            if sig in self._previous_handlers:
                signal.signal(sig, self._previous_handlers.pop(sig))
            elif self._loop is not None:
                self._loop.remove_signal_handler(sig)
        self._signals.clear()

    def _on_sync_signal(self, signum, frame):
        self._loop.call_soon_threadsafe(self._on_signal, signum)

    def _on_signal(self, signum: int):
        name = signal.Signals(signum).name
        logger.info(f"Received {name}, initiating shutdown...")
        self.request_shutdown(name)

    async def _watch_idle(self):
        while True:
            remaining = self._last_activity + self.idle_timeout - time.monotonic()
            if remaining <= 0:
                logger.info("Connection timeout reached. Shutting down...")
                self.request_shutdown("idle timeout")
                return
            await asyncio.sleep(remaining)

    async def run(self) -> str:
        """Block until shutdown is requested, drain, and return the reason"""
        self.notify_activity()
        idle_task = None
        if self.idle_timeout:
            idle_task = asyncio.ensure_future(self._watch_idle())

        try:
            await self._requested_event().wait()
        finally:
            if idle_task is not None:
                idle_task.cancel()
                await asyncio.gather(idle_task, return_exceptions=True)

        await self.drain()
        return self.reason

    async def drain(self):
        """Close the listener and wait for in-flight relays"""
        if self.state is not ShutdownState.RUNNING:
            await self._stopped_event().wait()
            return

        self._transition(ShutdownState.DRAINING)
        self.listener.close()

        in_flight = len(self.active)
        if not self.wait_for_drain:
            if in_flight:
                logger.warning(f"Not waiting for {in_flight} in-flight connection(s)")
        elif in_flight:
            logger.info(f"Waiting for {in_flight} in-flight connection(s) to finish")
            if not await self.active.wait_empty(self.drain_timeout):
                cancelled = self.active.cancel_all()
                logger.warning(f"Drain deadline of {self.drain_timeout}s reached, "
                               f"cancelled {cancelled} connection(s)")
                await self.active.wait_empty(CANCEL_GRACE)

        self._transition(ShutdownState.STOPPED)
        self._stopped_event().set()
