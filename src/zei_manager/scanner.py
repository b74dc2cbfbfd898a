"""bleak-backed LE scanner for the state machine.

Wraps ``BleakScanner`` so that one :meth:`BleakScannerBackend.scan` call
is one scan window:

- **Detection callback** — every advertisement is forwarded to the
  sink as ``DEVICE_DISCOVERED``.  Filtering is the manager's job.
- **Hard timeout** — ``BleakScanner.start()`` / ``stop()`` are wrapped
  in ``asyncio.wait_for()`` because BlueZ can leave them hanging.
- **Backoff on failure** — a scan that fails to start (adapter off,
  ``InProgress``) still reports ``SCAN_FINISHED``, but only after a
  short pause so the manager's rescan loop cannot spin.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .const import IS_LINUX
from .events import Event, EventSink, EventType
from .models import DeviceInfo

_LOGGER = logging.getLogger(__name__)

# Ceiling for BleakScanner.start()/stop() to return.
_HARD_TIMEOUT = 5.0

# Pause before reporting a failed scan as finished.
_ERROR_BACKOFF = 1.0


def _is_inprogress(exc: BaseException) -> bool:
    """Check if an exception is an InProgress error."""
    err_str = str(exc).lower()
    return "inprogress" in err_str or "in progress" in err_str


class BleakScannerBackend:
    """Scanner implementation on top of ``BleakScanner``.

    Parameters
    ----------
    sink:
        Receives ``DEVICE_DISCOVERED`` and ``SCAN_FINISHED`` events.
    adapter:
        BlueZ adapter name.  Only passed through on Linux.
    **scanner_kwargs:
        Extra keyword arguments for ``BleakScanner`` (e.g.
        ``scanning_mode``).
    """

    def __init__(
        self,
        sink: EventSink,
        *,
        adapter: str | None = None,
        **scanner_kwargs: Any,
    ) -> None:
        self._sink = sink
        self._adapter = adapter
        self._scanner_kwargs = scanner_kwargs
        self._task: asyncio.Task[None] | None = None
        self._stop_requested: asyncio.Event | None = None

    @property
    def is_scanning(self) -> bool:
        return self._task is not None and not self._task.done()

    def scan(self, timeout: float) -> None:
        """Start one scan window of *timeout* seconds.

        A second call while a window is open is ignored; the running
        window still reports ``SCAN_FINISHED``.  Must be called from a
        running event loop.
        """
        if self.is_scanning:
            _LOGGER.debug("Scan already running, ignoring request")
            return
        # Raises RuntimeError outside a running loop.
        asyncio.get_running_loop()
        self._stop_requested = asyncio.Event()
        self._task = asyncio.ensure_future(self._run(timeout, self._stop_requested))

    def stop(self) -> None:
        """End the current scan window early.  Safe when idle."""
        if self._stop_requested is not None:
            self._stop_requested.set()

    def _on_detection(
        self, device: BLEDevice, advertisement_data: AdvertisementData
    ) -> None:
        name = advertisement_data.local_name or device.name
        self._sink(
            Event(
                EventType.DEVICE_DISCOVERED,
                device=DeviceInfo(
                    address=device.address,
                    name=name,
                    low_energy=True,
                    rssi=advertisement_data.rssi,
                    handle=device,
                ),
                source=self,
            )
        )

    async def _run(self, timeout: float, stop_requested: asyncio.Event) -> None:
        kwargs: dict[str, Any] = dict(self._scanner_kwargs)
        if IS_LINUX and self._adapter:
            kwargs.setdefault("adapter", self._adapter)

        _LOGGER.debug("Scanning for %.1f s", timeout)
        try:
            scanner = BleakScanner(detection_callback=self._on_detection, **kwargs)
            await asyncio.wait_for(scanner.start(), timeout=_HARD_TIMEOUT)
            try:
                await asyncio.wait_for(stop_requested.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            finally:
                await asyncio.wait_for(scanner.stop(), timeout=_HARD_TIMEOUT)
        except (BleakError, asyncio.TimeoutError) as exc:
            if _is_inprogress(exc):
                _LOGGER.debug("Scan InProgress, backing off")
            elif isinstance(exc, asyncio.TimeoutError):
                _LOGGER.warning(
                    "Scanner hard timeout after %.0f s", _HARD_TIMEOUT
                )
            else:
                _LOGGER.warning("Scan error: %s", exc)
            await asyncio.sleep(_ERROR_BACKOFF)
        finally:
            self._task = None
            self._sink(Event(EventType.SCAN_FINISHED, source=self))
