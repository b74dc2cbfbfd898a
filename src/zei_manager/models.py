"""Value types shared by the state machine and the BLE backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from .const import uuid_matches


class InvalidPayloadError(ValueError):
    """A notification payload could not be decoded."""


class ConnectionStatus(str, Enum):
    """Lifecycle status of the dice connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Orientation(IntEnum):
    """Face of the dice pointing up.  ``VERTICAL`` is the rest position."""

    VERTICAL = 0
    FACE1 = 1
    FACE2 = 2
    FACE3 = 3
    FACE4 = 4
    FACE5 = 5
    FACE6 = 6
    FACE7 = 7
    FACE8 = 8


class ServiceState(str, Enum):
    """Discovery state of a GATT service object."""

    REMOTE_SERVICE = "remote_service"
    DISCOVERING = "discovering"
    DISCOVERED = "discovered"


def decode_orientation(payload: bytes) -> Orientation:
    """Decode an orientation notification.

    Only the first byte is meaningful.  Codes above 8 are not faces and
    map to :attr:`Orientation.VERTICAL`.

    Raises
    ------
    InvalidPayloadError
        If *payload* is empty.
    """
    if not payload:
        raise InvalidPayloadError("orientation payload is empty")
    code = payload[0]
    if code > Orientation.FACE8:
        return Orientation.VERTICAL
    return Orientation(code)


@dataclass(frozen=True)
class DeviceInfo:
    """A device reported by a scan.

    *handle* is the backend's own device object (a ``BLEDevice`` for
    bleak) and takes no part in equality.
    """

    address: str
    name: str | None
    low_energy: bool = True
    rssi: int | None = None
    handle: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class GattDescriptor:
    uuid: str
    characteristic_uuid: str
    handle: int | None = None


@dataclass(frozen=True)
class GattCharacteristic:
    uuid: str
    properties: tuple[str, ...] = ()
    descriptors: tuple[GattDescriptor, ...] = ()

    def descriptor(self, uuid: str) -> GattDescriptor | None:
        """Return the descriptor with *uuid*, or ``None``."""
        for desc in self.descriptors:
            if uuid_matches(desc.uuid, uuid):
                return desc
        return None
