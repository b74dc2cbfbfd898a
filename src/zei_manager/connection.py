"""bleak-backed GATT connection and service objects.

:class:`BleakConnection` establishes the link through
``bleak_retry_connector.establish_connection(max_attempts=1)``: the
upstream connector still handles BlueZ cache and stale-connection
quirks, but retrying is left to the state machine.

bleak resolves the GATT database while connecting, so service and
detail discovery complete synchronously here; the events are still
delivered through the sink so the manager sees the same sequence as
with any other backend.

Writes to the client characteristic configuration descriptor are
mapped onto ``start_notify()`` / ``stop_notify()``.  BlueZ owns the
CCCD and rejects direct writes to it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from bleak import BleakClient
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

from .const import (
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    DISABLE_NOTIFICATION,
    DISCONNECT_TIMEOUT,
    ENABLE_NOTIFICATION,
    IS_WINDOWS,
    uuid_matches,
)
from .events import Event, EventSink, EventType
from .models import DeviceInfo, GattCharacteristic, GattDescriptor, ServiceState

_LOGGER = logging.getLogger(__name__)

try:
    from bleak_retry_connector import (
        BleakAbortedError,
        BleakNotFoundError,
        establish_connection as _brc_establish_connection,
    )
except ImportError as _exc:
    raise ImportError(
        "bleak-retry-connector is required: pip install bleak-retry-connector"
    ) from _exc

_NOTIFY_PROPERTIES = frozenset({"notify", "indicate"})


class BleakService:
    """Service implementation over a connected ``BleakClient``."""

    def __init__(
        self,
        client: BleakClient,
        service: BleakGATTService,
        sink: EventSink,
    ) -> None:
        self._client = client
        self._service = service
        self._sink = sink
        self._released = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def uuid(self) -> str:
        return self._service.uuid

    def discover_details(self) -> None:
        self._sink(
            Event(
                EventType.SERVICE_STATE_CHANGED,
                state=ServiceState.DISCOVERING,
                source=self,
            )
        )
        self._sink(
            Event(
                EventType.SERVICE_STATE_CHANGED,
                state=ServiceState.DISCOVERED,
                source=self,
            )
        )

    def characteristic(self, uuid: str) -> GattCharacteristic | None:
        char = self._service.get_characteristic(uuid)
        if char is None:
            return None

        descriptors = [
            GattDescriptor(
                uuid=desc.uuid,
                characteristic_uuid=char.uuid,
                handle=desc.handle,
            )
            for desc in char.descriptors
        ]
        has_cccd = any(
            uuid_matches(d.uuid, CLIENT_CHARACTERISTIC_CONFIG_UUID)
            for d in descriptors
        )
        # BlueZ does not always export the CCCD of a notifying characteristic.
        if not has_cccd and _NOTIFY_PROPERTIES.intersection(char.properties):
            descriptors.append(
                GattDescriptor(
                    uuid=CLIENT_CHARACTERISTIC_CONFIG_UUID,
                    characteristic_uuid=char.uuid,
                )
            )

        return GattCharacteristic(
            uuid=char.uuid,
            properties=tuple(char.properties),
            descriptors=tuple(descriptors),
        )

    def write_descriptor(self, descriptor: GattDescriptor, value: bytes) -> None:
        task = asyncio.ensure_future(self._write_descriptor(descriptor, bytes(value)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def release(self) -> None:
        """Stop forwarding events.  Pending writes are left to finish."""
        self._released = True

    def _on_notify(self, sender: BleakGATTCharacteristic, data: bytearray) -> None:
        if self._released:
            return
        self._sink(
            Event(
                EventType.CHARACTERISTIC_CHANGED,
                uuid=sender.uuid,
                payload=bytes(data),
                source=self,
            )
        )

    async def _write_descriptor(self, descriptor: GattDescriptor, value: bytes) -> None:
        try:
            if uuid_matches(descriptor.uuid, CLIENT_CHARACTERISTIC_CONFIG_UUID) and (
                value in (ENABLE_NOTIFICATION, DISABLE_NOTIFICATION)
            ):
                if value == ENABLE_NOTIFICATION:
                    await self._client.start_notify(
                        descriptor.characteristic_uuid, self._on_notify
                    )
                else:
                    await self._client.stop_notify(descriptor.characteristic_uuid)
            elif descriptor.handle is None:
                raise BleakError(f"Descriptor {descriptor.uuid} has no handle")
            else:
                await self._client.write_gatt_descriptor(descriptor.handle, value)
        except BleakError as exc:
            _LOGGER.debug(
                "Writing descriptor %s failed: %s", descriptor.uuid, exc
            )
            self._sink(Event(EventType.ERROR, error=str(exc), source=self))
            return

        if self._released:
            return
        self._sink(
            Event(
                EventType.DESCRIPTOR_WRITTEN,
                descriptor=descriptor,
                payload=value,
                source=self,
            )
        )


class BleakConnection:
    """Connection implementation on top of ``BleakClient``.

    Parameters
    ----------
    device:
        Scan result to connect to.  ``device.handle`` must be the
        ``BLEDevice`` reported by bleak.
    sink:
        Receives connection events.
    address_type:
        Remote address type, forwarded on Windows only.
    client_class:
        The BleakClient class (or subclass) to use.
    **client_kwargs:
        Additional keyword arguments passed through to
        ``bleak_retry_connector.establish_connection()``.
    """

    def __init__(
        self,
        device: DeviceInfo,
        sink: EventSink,
        *,
        address_type: str = "random",
        client_class: type[BleakClient] = BleakClient,
        **client_kwargs: Any,
    ) -> None:
        self._device = device
        self._sink = sink
        self._address_type = address_type
        self._client_class = client_class
        self._client_kwargs = client_kwargs
        self._client: BleakClient | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def device(self) -> DeviceInfo:
        return self._device

    @property
    def client(self) -> BleakClient | None:
        return self._client

    @property
    def display_name(self) -> str:
        return self._device.name or self._device.address

    def connect_to_device(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            _LOGGER.debug("%s: Connect already in progress", self.display_name)
            return
        self._connect_task = asyncio.ensure_future(self._connect())

    def disconnect_from_device(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        client = self._client
        if client is None:
            return
        task = asyncio.ensure_future(self._disconnect(client))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def discover_services(self) -> None:
        client = self._client
        if client is None:
            self._sink(
                Event(EventType.ERROR, error="not connected", source=self)
            )
            return
        for service in client.services:
            self._sink(
                Event(EventType.SERVICE_DISCOVERED, uuid=service.uuid, source=self)
            )
        self._sink(Event(EventType.SERVICE_SCAN_DONE, source=self))

    def create_service_object(self, uuid: str) -> BleakService | None:
        client = self._client
        if client is None:
            return None
        service = client.services.get_service(uuid)
        if service is None:
            return None
        return BleakService(client, service, self._sink)

    def _on_disconnected(self, client: BleakClient) -> None:
        if self._client is not client:
            return
        self._client = None
        self._sink(Event(EventType.DISCONNECTED, source=self))

    async def _connect(self) -> None:
        kwargs = dict(self._client_kwargs)
        if IS_WINDOWS:
            kwargs.setdefault("address_type", self._address_type)

        try:
            client = await _brc_establish_connection(
                self._client_class,
                self._device.handle,
                self.display_name,
                disconnected_callback=self._on_disconnected,
                max_attempts=1,
                **kwargs,
            )
        except (BleakError, BleakAbortedError, BleakNotFoundError, asyncio.TimeoutError) as exc:
            _LOGGER.debug("%s: Connect failed: %s", self.display_name, exc)
            self._sink(Event(EventType.ERROR, error=str(exc), source=self))
            return

        self._client = client
        _LOGGER.debug("%s: Connected", self.display_name)
        self._sink(Event(EventType.CONNECTED, source=self))

    async def _disconnect(self, client: BleakClient) -> None:
        try:
            await asyncio.wait_for(client.disconnect(), timeout=DISCONNECT_TIMEOUT)
        except asyncio.TimeoutError:
            _LOGGER.warning(
                "%s: Disconnect timed out after %.1f s",
                self.display_name,
                DISCONNECT_TIMEOUT,
            )
        except BleakError:
            _LOGGER.debug(
                "%s: Disconnect failed", self.display_name, exc_info=True
            )
        else:
            return

        # The link state is unknown; report it as gone so the session ends.
        if self._client is client:
            self._client = None
            self._sink(Event(EventType.DISCONNECTED, source=self))
