"""Contracts the state machine expects from a BLE subsystem.

The manager never touches bleak directly.  It talks to objects
satisfying these protocols, which report back asynchronously through
an :data:`~zei_manager.events.EventSink`.  All methods must return
immediately; outcomes arrive later as events.

:mod:`zei_manager.scanner` and :mod:`zei_manager.connection` provide
the bleak implementations.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from .events import EventSink
from .models import DeviceInfo, GattCharacteristic, GattDescriptor


class Scanner(Protocol):
    """LE device discovery.

    Emits ``DEVICE_DISCOVERED`` zero or more times and
    ``SCAN_FINISHED`` exactly once per :meth:`scan` call.
    """

    def scan(self, timeout: float) -> None: ...

    def stop(self) -> None: ...


class Service(Protocol):
    """A GATT service on a connected peripheral.

    Emits ``SERVICE_STATE_CHANGED``, ``CHARACTERISTIC_CHANGED`` and
    ``DESCRIPTOR_WRITTEN``.
    """

    def discover_details(self) -> None: ...

    def characteristic(self, uuid: str) -> GattCharacteristic | None: ...

    def write_descriptor(self, descriptor: GattDescriptor, value: bytes) -> None: ...

    def release(self) -> None: ...


class Connection(Protocol):
    """GATT central-role link to one peripheral.

    Emits ``CONNECTED``, ``DISCONNECTED``, ``ERROR``,
    ``SERVICE_DISCOVERED`` (once per service) and ``SERVICE_SCAN_DONE``
    (once, after all services).
    """

    def connect_to_device(self) -> None: ...

    def disconnect_from_device(self) -> None: ...

    def discover_services(self) -> None: ...

    def create_service_object(self, uuid: str) -> Service | None: ...


ScannerFactory = Callable[[EventSink], Scanner]
ConnectionFactory = Callable[[DeviceInfo, EventSink], Connection]
