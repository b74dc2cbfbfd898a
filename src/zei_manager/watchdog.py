"""Phase watchdog bounding each step of the Connecting state.

A connect request or a GATT discovery can stall without the BLE stack
ever reporting an error or a disconnect, which would leave the manager
in Connecting forever.  The manager arms this watchdog on entry to
every phase and cancels it on exit.  When a phase outlives its budget
the *on_expired* callback receives the phase so the manager can
abandon the session.

Usage::

    watchdog = PhaseWatchdog(on_expired=my_callback)
    watchdog.start(Phase.CONNECT, 30.0)

    # Phase finished:
    watchdog.cancel()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .events import Phase

_LOGGER = logging.getLogger(__name__)


class PhaseWatchdog:
    """Run at most one phase timer at a time.

    Parameters
    ----------
    on_expired:
        Called with the expired :class:`Phase`.  Invoked from the event
        loop, never while :meth:`start` or :meth:`cancel` is running.
    """

    def __init__(self, on_expired: Callable[[Phase], None]) -> None:
        self._on_expired = on_expired
        self._phase: Phase | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def phase(self) -> Phase | None:
        """Return the phase being timed, or ``None`` when idle."""
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, phase: Phase, timeout: float | None) -> None:
        """Time *phase*, replacing any running timer.

        A *timeout* of ``None`` only cancels the previous timer.
        """
        self.cancel()
        if timeout is None:
            return
        self._phase = phase
        self._task = asyncio.ensure_future(self._expire(phase, timeout))

    def cancel(self) -> None:
        """Stop the running timer.  Safe to call when idle."""
        self._phase = None
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _expire(self, phase: Phase, timeout: float) -> None:
        try:
            await asyncio.sleep(timeout)
        except asyncio.CancelledError:
            return

        _LOGGER.warning(
            "PhaseWatchdog: %s did not complete within %.1f s",
            phase.value,
            timeout,
        )
        self._phase = None
        self._task = None
        try:
            self._on_expired(phase)
        except Exception:
            _LOGGER.exception("PhaseWatchdog: on_expired callback failed")
