"""zei-manager: BLE connection lifecycle for the Timeular ZEI dice.

Scans for the dice, connects through bleak-retry-connector, enables
orientation notifications and reports status and orientation changes.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .backend import Connection, Scanner, Service
from .connection import BleakConnection, BleakService
from .const import (
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    DEVICE_NAME,
    DISABLE_NOTIFICATION,
    ENABLE_NOTIFICATION,
    ORIENTATION_CHARACTERISTIC_UUID,
    ORIENTATION_SERVICE_UUID,
    ZEI_IDENTITY,
    DeviceIdentity,
    ManagerConfig,
)
from .events import Event, EventType, Phase
from .manager import DeviceManager, ManagerState, SessionHandles
from .models import (
    ConnectionStatus,
    DeviceInfo,
    GattCharacteristic,
    GattDescriptor,
    InvalidPayloadError,
    Orientation,
    ServiceState,
    decode_orientation,
)
from .scanner import BleakScannerBackend
from .watchdog import PhaseWatchdog

__all__ = [
    # State machine
    "DeviceManager",
    "ManagerState",
    "SessionHandles",
    # Events
    "Event",
    "EventType",
    "Phase",
    # Models
    "ConnectionStatus",
    "DeviceInfo",
    "GattCharacteristic",
    "GattDescriptor",
    "InvalidPayloadError",
    "Orientation",
    "ServiceState",
    "decode_orientation",
    # Backend contracts
    "Connection",
    "Scanner",
    "Service",
    # bleak backends
    "BleakConnection",
    "BleakScannerBackend",
    "BleakService",
    # Watchdog
    "PhaseWatchdog",
    # Configuration
    "DeviceIdentity",
    "ManagerConfig",
    "ZEI_IDENTITY",
    # Constants
    "CLIENT_CHARACTERISTIC_CONFIG_UUID",
    "DEVICE_NAME",
    "DISABLE_NOTIFICATION",
    "ENABLE_NOTIFICATION",
    "ORIENTATION_CHARACTERISTIC_UUID",
    "ORIENTATION_SERVICE_UUID",
]
