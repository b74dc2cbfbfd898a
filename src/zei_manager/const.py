"""Constants and configuration dataclasses for zei-manager."""

from __future__ import annotations

import platform
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bleak.uuids import normalize_uuid_str

if TYPE_CHECKING:
    from .models import DeviceInfo

IS_LINUX = platform.system() == "Linux"
IS_WINDOWS = platform.system() == "Windows"

# GATT identifiers exposed by the dice.  These must match bit-exact.
ORIENTATION_SERVICE_UUID = "c7e70010-c847-11e6-8175-8c89a55d403c"
ORIENTATION_CHARACTERISTIC_UUID = "c7e70012-c847-11e6-8175-8c89a55d403c"
CLIENT_CHARACTERISTIC_CONFIG_UUID = "00002902-0000-1000-8000-00805f9b34fb"

DEVICE_NAME = "Timeular ZEI"

# CCCD values, little-endian.
ENABLE_NOTIFICATION = b"\x01\x00"
DISABLE_NOTIFICATION = b"\x00\x00"

# Length of one LE scan window (seconds).
DEFAULT_SCAN_TIMEOUT = 5.0

# Per-phase ceilings while the manager is Connecting.
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_SERVICE_DISCOVERY_TIMEOUT = 15.0
DEFAULT_DETAILS_TIMEOUT = 15.0

# How long to wait for a disconnect to complete before giving up.
DISCONNECT_TIMEOUT = 5.0


def uuid_matches(first: str, second: str) -> bool:
    """Compare two UUID strings after normalization."""
    return normalize_uuid_str(first) == normalize_uuid_str(second)


@dataclass(frozen=True)
class DeviceIdentity:
    """How the target peripheral is recognized and addressed.

    The advertised *name* is the sole admission criterion during
    discovery.  The UUIDs locate the orientation data once connected.
    """

    name: str = DEVICE_NAME
    service_uuid: str = ORIENTATION_SERVICE_UUID
    characteristic_uuid: str = ORIENTATION_CHARACTERISTIC_UUID
    notification_descriptor_uuid: str = CLIENT_CHARACTERISTIC_CONFIG_UUID

    def matches(self, device: DeviceInfo) -> bool:
        """Return whether *device* is an LE device advertising our name."""
        return device.low_energy and device.name == self.name


ZEI_IDENTITY = DeviceIdentity()


@dataclass
class ManagerConfig:
    """Configuration for :class:`~zei_manager.manager.DeviceManager`.

    Parameters
    ----------
    scan_timeout:
        Duration of a single LE scan window in seconds.  When a window
        ends without finding the dice, a new one starts immediately.
    connect_timeout:
        Maximum seconds between issuing a connect and the link coming
        up.  ``None`` disables the guard.
    service_discovery_timeout:
        Maximum seconds for GATT service enumeration.  ``None``
        disables the guard.
    details_timeout:
        Maximum seconds for characteristic/descriptor discovery of the
        orientation service.  ``None`` disables the guard.
    adapter:
        BlueZ adapter to scan on (e.g. ``"hci1"``).  ``None`` uses the
        system default.  Ignored on non-Linux platforms.
    address_type:
        Remote address type.  The dice advertises a random static
        address; only the WinRT backend needs to be told.
    """

    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT
    service_discovery_timeout: float | None = DEFAULT_SERVICE_DISCOVERY_TIMEOUT
    details_timeout: float | None = DEFAULT_DETAILS_TIMEOUT
    adapter: str | None = None
    address_type: str = "random"
