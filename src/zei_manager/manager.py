"""Connection lifecycle state machine for the Timeular ZEI dice.

:class:`DeviceManager` drives one dice through::

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> ...

Connecting covers scanning, the GATT connect, service enumeration and
characteristic discovery.  Connected means orientation notifications
have been requested.  Any failure, stall or disconnect returns to
Disconnected; only the scan window is retried automatically.

Every input is an :class:`~zei_manager.events.Event` handled by
:meth:`DeviceManager.dispatch`.  Backends report through
:meth:`DeviceManager.post`, which queues events so that a backend
answering synchronously never re-enters the dispatcher, and which
forwards calls made from foreign threads to the owning event loop.

Usage::

    manager = DeviceManager()
    manager.add_orientation_listener(print)
    manager.start_discovery()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from .backend import (
    Connection,
    ConnectionFactory,
    Scanner,
    ScannerFactory,
    Service,
)
from .connection import BleakConnection
from .const import (
    DISABLE_NOTIFICATION,
    ENABLE_NOTIFICATION,
    ZEI_IDENTITY,
    DeviceIdentity,
    ManagerConfig,
    uuid_matches,
)
from .events import (
    CONNECTION_EVENTS,
    SERVICE_EVENTS,
    Event,
    EventSink,
    EventType,
    Phase,
)
from .models import (
    ConnectionStatus,
    DeviceInfo,
    GattDescriptor,
    InvalidPayloadError,
    Orientation,
    ServiceState,
    decode_orientation,
)
from .scanner import BleakScannerBackend
from .watchdog import PhaseWatchdog

_LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[ConnectionStatus], None]
OrientationListener = Callable[[Orientation], None]


@dataclass
class SessionHandles:
    """Backend objects of the current session.  Never shared."""

    connection: Connection | None = None
    service: Service | None = None
    notification_descriptor: GattDescriptor | None = None


@dataclass
class ManagerState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    orientation: Orientation = Orientation.VERTICAL
    service_found: bool = False
    session: SessionHandles = field(default_factory=SessionHandles)


class DeviceManager:
    """Discover, connect to and stream orientation from one ZEI dice.

    Parameters
    ----------
    config:
        Timeouts and adapter settings.  Defaults to
        :class:`~zei_manager.const.ManagerConfig`.
    scanner_factory:
        Builds the scanner from an event sink.  Defaults to
        :class:`~zei_manager.scanner.BleakScannerBackend`.
    connection_factory:
        Builds a connection for an admitted device.  Defaults to
        :class:`~zei_manager.connection.BleakConnection`.
    identity:
        Name and UUIDs of the target peripheral.

    The running event loop is captured by the first
    :meth:`start_discovery` or :meth:`stop` call; events posted from
    other threads are forwarded to it.
    """

    def __init__(
        self,
        config: ManagerConfig | None = None,
        *,
        scanner_factory: ScannerFactory | None = None,
        connection_factory: ConnectionFactory | None = None,
        identity: DeviceIdentity = ZEI_IDENTITY,
    ) -> None:
        self._config = config or ManagerConfig()
        self._identity = identity
        self._connection_factory = connection_factory or self._default_connection
        self._state = ManagerState()
        self._pending: deque[Event] = deque()
        self._dispatching = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._status_listeners: list[StatusListener] = []
        self._orientation_listeners: list[OrientationListener] = []
        self._watchdog = PhaseWatchdog(self._on_phase_expired)
        self._scanner: Scanner = (scanner_factory or self._default_scanner)(self.post)
        self._handlers: dict[EventType, Callable[[Event], None]] = {
            EventType.START_DISCOVERY: self._on_start_discovery,
            EventType.STOP: self._on_stop,
            EventType.SCAN_FINISHED: self._on_scan_finished,
            EventType.DEVICE_DISCOVERED: self._on_device_discovered,
            EventType.CONNECTED: self._on_connected,
            EventType.DISCONNECTED: self._on_disconnected,
            EventType.ERROR: self._on_error,
            EventType.SERVICE_DISCOVERED: self._on_service_discovered,
            EventType.SERVICE_SCAN_DONE: self._on_service_scan_done,
            EventType.SERVICE_STATE_CHANGED: self._on_service_state_changed,
            EventType.CHARACTERISTIC_CHANGED: self._on_characteristic_changed,
            EventType.DESCRIPTOR_WRITTEN: self._on_descriptor_written,
            EventType.PHASE_TIMEOUT: self._on_phase_timeout,
        }

    # ── Public API ─────────────────────────────────────────────────

    @property
    def config(self) -> ManagerConfig:
        return self._config

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def orientation(self) -> Orientation:
        return self._state.orientation

    @property
    def session(self) -> SessionHandles:
        """Return a snapshot of the current session handles."""
        return replace(self._state.session)

    def start_discovery(self) -> None:
        """Begin scanning for the dice.  No-op unless Disconnected.

        Must be called with an asyncio event loop running.  Without one
        a ``RuntimeError`` is raised and the status stays Disconnected.
        """
        self._bind_loop()
        self.post(Event(EventType.START_DISCOVERY))

    def stop(self) -> None:
        """Stop scanning and close any session.

        When Connected, notifications are disabled first and the
        disconnect follows from the confirmed descriptor write.
        """
        self._bind_loop()
        self.post(Event(EventType.STOP))

    def add_status_listener(self, callback: StatusListener) -> Callable[[], None]:
        """Register *callback* for status changes.  Returns an unsubscribe."""
        self._status_listeners.append(callback)
        return lambda: self._remove_listener(self._status_listeners, callback)

    def add_orientation_listener(
        self, callback: OrientationListener
    ) -> Callable[[], None]:
        """Register *callback* for orientation changes.  Returns an unsubscribe."""
        self._orientation_listeners.append(callback)
        return lambda: self._remove_listener(self._orientation_listeners, callback)

    def post(self, event: Event) -> None:
        """Queue *event* for dispatch.

        Safe to call from any thread.  Events are dispatched in order,
        one at a time, on the loop that owns the manager.
        """
        loop = self._loop
        if (
            loop is not None
            and self._loop_thread is not None
            and threading.get_ident() != self._loop_thread
        ):
            loop.call_soon_threadsafe(self.post, event)
            return

        self._pending.append(event)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                self.dispatch(self._pending.popleft())
        finally:
            self._dispatching = False

    def dispatch(self, event: Event) -> None:
        """Apply one event to the state machine."""
        if self._is_stale(event):
            _LOGGER.debug("Dropping %s from released handle", event.type.value)
            return
        handler = self._handlers[event.type]
        handler(event)

    # ── Transitions ────────────────────────────────────────────────

    def _on_start_discovery(self, event: Event) -> None:
        if self._state.status is not ConnectionStatus.DISCONNECTED:
            _LOGGER.debug(
                "Discovery requested while %s, ignoring", self._state.status.value
            )
            return

        _LOGGER.debug("Starting discovery")
        self._state.service_found = False
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            self._scanner.scan(self._config.scan_timeout)
        except RuntimeError:
            # No event loop to scan on.
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise

    def _on_stop(self, event: Event) -> None:
        self._scanner.stop()
        session = self._state.session
        if (
            self._state.status is ConnectionStatus.CONNECTED
            and session.service is not None
            and session.notification_descriptor is not None
        ):
            _LOGGER.info("Disabling notifications")
            session.service.write_descriptor(
                session.notification_descriptor, DISABLE_NOTIFICATION
            )
            return
        self._abandon_session("stopped")

    def _on_scan_finished(self, event: Event) -> None:
        session = self._state.session
        if session.connection is not None or session.service is not None:
            return
        if self._state.status is not ConnectionStatus.CONNECTING:
            return
        _LOGGER.debug("%s not found, scanning again", self._identity.name)
        self._scanner.scan(self._config.scan_timeout)

    def _on_device_discovered(self, event: Event) -> None:
        if self._state.status is not ConnectionStatus.CONNECTING:
            return
        device = event.device
        if device is None or not self._identity.matches(device):
            return

        session = self._state.session
        if session.connection is not None:
            _LOGGER.debug("%s: Already connecting, ignoring", device.address)
            return

        _LOGGER.info("Connecting to %s (%s)", device.name, device.address)
        self._scanner.stop()
        session.connection = self._connection_factory(device, self.post)
        self._watchdog.start(Phase.CONNECT, self._config.connect_timeout)
        session.connection.connect_to_device()

    def _on_connected(self, event: Event) -> None:
        connection = self._state.session.connection
        if connection is None:
            return
        _LOGGER.debug("Link up, discovering services")
        self._watchdog.start(
            Phase.SERVICE_DISCOVERY, self._config.service_discovery_timeout
        )
        connection.discover_services()

    def _on_service_discovered(self, event: Event) -> None:
        if event.uuid is not None and uuid_matches(
            event.uuid, self._identity.service_uuid
        ):
            self._state.service_found = True

    def _on_service_scan_done(self, event: Event) -> None:
        self._release_service()
        connection = self._state.session.connection
        if connection is None:
            return

        service = None
        if self._state.service_found:
            service = connection.create_service_object(self._identity.service_uuid)
        if service is None:
            _LOGGER.warning("Orientation service not found")
            self._abandon_session("service not found")
            return

        self._state.session.service = service
        self._watchdog.start(Phase.SERVICE_DETAILS, self._config.details_timeout)
        service.discover_details()

    def _on_service_state_changed(self, event: Event) -> None:
        if event.state is not ServiceState.DISCOVERED:
            return
        service = self._state.session.service
        if service is None:
            return
        self._watchdog.cancel()

        characteristic = service.characteristic(self._identity.characteristic_uuid)
        if characteristic is None:
            _LOGGER.warning("Orientation characteristic not found")
            self._abandon_session("characteristic not found")
            return

        descriptor = characteristic.descriptor(
            self._identity.notification_descriptor_uuid
        )
        if descriptor is None:
            _LOGGER.warning("Orientation notification descriptor not found")
            self._abandon_session("descriptor not found")
            return

        self._state.session.notification_descriptor = descriptor
        _LOGGER.info("Device connected")
        self._set_status(ConnectionStatus.CONNECTED)
        service.write_descriptor(descriptor, ENABLE_NOTIFICATION)

    def _on_characteristic_changed(self, event: Event) -> None:
        if event.uuid is None or not uuid_matches(
            event.uuid, self._identity.characteristic_uuid
        ):
            return
        try:
            orientation = decode_orientation(event.payload or b"")
        except InvalidPayloadError as exc:
            _LOGGER.warning("Ignoring orientation notification: %s", exc)
            return

        _LOGGER.debug("Orientation %d", orientation)
        if orientation != self._state.orientation:
            self._state.orientation = orientation
            self._emit(self._orientation_listeners, orientation)

    def _on_descriptor_written(self, event: Event) -> None:
        session = self._state.session
        if (
            session.notification_descriptor is None
            or event.descriptor != session.notification_descriptor
            or event.payload != DISABLE_NOTIFICATION
        ):
            return

        # Notifications turned off: the session is over.
        _LOGGER.info("Notifications disabled, disconnecting")
        if session.connection is not None:
            session.connection.disconnect_from_device()
        self._release_service()

    def _on_disconnected(self, event: Event) -> None:
        self._watchdog.cancel()
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._release_service()
        self._state.session.connection = None
        _LOGGER.info("Device disconnected")

    def _on_error(self, event: Event) -> None:
        _LOGGER.warning("BLE error: %s", event.error)

    def _on_phase_timeout(self, event: Event) -> None:
        if self._state.status is not ConnectionStatus.CONNECTING:
            return
        phase = event.phase.value if event.phase else "unknown"
        _LOGGER.warning(
            "Giving up on %s: %s phase timed out", self._identity.name, phase
        )
        self._abandon_session(f"{phase} timed out")

    # ── Helpers ────────────────────────────────────────────────────

    def _abandon_session(self, reason: str) -> None:
        """Drop all handles and force Disconnected."""
        self._watchdog.cancel()
        self._release_service()
        connection = self._state.session.connection
        self._state.session.connection = None
        if connection is not None:
            _LOGGER.debug("Closing connection: %s", reason)
            connection.disconnect_from_device()
        self._set_status(ConnectionStatus.DISCONNECTED)

    def _release_service(self) -> None:
        session = self._state.session
        if session.service is not None:
            session.service.release()
        session.service = None
        session.notification_descriptor = None

    def _is_stale(self, event: Event) -> bool:
        if event.source is None:
            return False
        session = self._state.session
        if event.type is EventType.ERROR:
            return event.source is not session.connection and (
                event.source is not session.service
            )
        if event.type in CONNECTION_EVENTS:
            return event.source is not session.connection
        if event.type in SERVICE_EVENTS:
            return event.source is not session.service
        return False

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._state.status:
            return
        self._state.status = status
        self._emit(self._status_listeners, status)

    def _emit(self, listeners: list, value: object) -> None:
        for callback in list(listeners):
            try:
                callback(value)
            except Exception:
                _LOGGER.exception("Listener %r failed", callback)

    def _bind_loop(self) -> None:
        if self._loop is not None:
            return
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._loop_thread = threading.get_ident()

    def _on_phase_expired(self, phase: Phase) -> None:
        self.post(Event(EventType.PHASE_TIMEOUT, phase=phase))

    def _default_scanner(self, sink: EventSink) -> Scanner:
        return BleakScannerBackend(sink, adapter=self._config.adapter)

    def _default_connection(self, device: DeviceInfo, sink: EventSink) -> Connection:
        return BleakConnection(device, sink, address_type=self._config.address_type)

    @staticmethod
    def _remove_listener(listeners: list, callback: object) -> None:
        if callback in listeners:
            listeners.remove(callback)
