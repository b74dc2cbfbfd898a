"""Events consumed by the device state machine.

Every input to :class:`~zei_manager.manager.DeviceManager` — a public
API call, a scan result, a connection callback, a notification — is an
:class:`Event`.  Backends never call manager methods directly; they
hand events to the sink they were created with.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import DeviceInfo, GattDescriptor, ServiceState


class EventType(str, Enum):
    START_DISCOVERY = "start_discovery"
    STOP = "stop"
    SCAN_FINISHED = "scan_finished"
    DEVICE_DISCOVERED = "device_discovered"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    SERVICE_DISCOVERED = "service_discovered"
    SERVICE_SCAN_DONE = "service_scan_done"
    SERVICE_STATE_CHANGED = "service_state_changed"
    CHARACTERISTIC_CHANGED = "characteristic_changed"
    DESCRIPTOR_WRITTEN = "descriptor_written"
    PHASE_TIMEOUT = "phase_timeout"


# Events that only make sense for the currently held handle.
CONNECTION_EVENTS = frozenset(
    {
        EventType.CONNECTED,
        EventType.DISCONNECTED,
        EventType.ERROR,
        EventType.SERVICE_DISCOVERED,
        EventType.SERVICE_SCAN_DONE,
    }
)
SERVICE_EVENTS = frozenset(
    {
        EventType.SERVICE_STATE_CHANGED,
        EventType.CHARACTERISTIC_CHANGED,
        EventType.DESCRIPTOR_WRITTEN,
    }
)


class Phase(str, Enum):
    """Bounded steps of the Connecting state."""

    CONNECT = "connect"
    SERVICE_DISCOVERY = "service_discovery"
    SERVICE_DETAILS = "service_details"


@dataclass(frozen=True)
class Event:
    """A single input to the state machine.

    Only the fields relevant to *type* are set.  *source* is the
    backend object that produced the event; ``None`` for events that
    did not come from a connection or service.
    """

    type: EventType
    device: DeviceInfo | None = None
    uuid: str | None = None
    payload: bytes | None = None
    descriptor: GattDescriptor | None = None
    state: ServiceState | None = None
    error: str | None = None
    phase: Phase | None = None
    source: Any = None


EventSink = Callable[[Event], None]
