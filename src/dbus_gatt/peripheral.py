"""
GATT peripheral lifecycle.

Peripheral owns the attribute tree, the notification engine and the
device property callbacks, and drives registration with BlueZ:

    build tree -> export objects -> RegisterApplication
        -> RegisterAdvertisement -> GLib main loop

Startup failures are raised from start() before the main loop runs.
Losing the bus connection or the BlueZ daemon ends the loop and is
raised as TransportLost.
"""

import logging
import signal
import threading
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple, Union

from gi.repository import Gio, GLib

from .advertising import Advertisement
from .bluez import (
    ensure_adapter_powered,
    find_adapter_path,
    get_le_advertising_active_instances,
    get_system_bus,
    register_advertisement_async,
    register_application_async,
    request_bus_name,
    unregister_advertisement_async,
    unregister_application_async,
    watch_bluez,
)
from .device_events import DeviceEventBridge
from .dispatcher import CallbackDispatcher
from .exceptions import DBusGattError, RegistrationFailure, TransportLost
from .exporter import GattObjectExporter
from .model import AttributeTree, Service
from .notifier import NotificationEngine
from .properties import DeviceProperty, PropertyCallback, PropertyCallbackRegistry
from .values import AttributeValue

logger = logging.getLogger(__name__)


class RegistrationState(Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    FAILED = "failed"


class Peripheral:
    """
    BLE GATT peripheral controller.

    Construction validates the services and raises ConfigurationError
    on a malformed tree; no D-Bus traffic happens until start().
    """

    def __init__(
        self,
        services: Iterable[Service],
        app_path: str = "/dbus_gatt",
        bus_name: Optional[str] = None,
        adapter: str = "hci0",
        local_name: Optional[str] = None,
        advertise: bool = True,
        appearance: Optional[int] = None,
        verbose: bool = False,
        bus: Optional[Gio.DBusConnection] = None,
    ):
        self.app_path = app_path
        self.bus_name = bus_name
        self.adapter = adapter
        self.local_name = local_name
        self.advertise = advertise
        self.appearance = appearance
        self.verbose = verbose

        self.tree = AttributeTree.build(app_path, services)
        self.notifier = NotificationEngine(self.tree, verbose=verbose)
        self.dispatcher = CallbackDispatcher(self.tree, self.notifier, verbose=verbose)
        self.properties = PropertyCallbackRegistry()

        self._bus = bus
        self._adapter_path: Optional[str] = None
        self._exporter: Optional[GattObjectExporter] = None
        self._advertisement: Optional[Advertisement] = None
        self._event_bridge: Optional[DeviceEventBridge] = None
        self._main_loop: Optional[GLib.MainLoop] = None
        self._closed_handler_id: Optional[int] = None
        self._bluez_watch_id: Optional[int] = None
        self._app_registered = False
        self._adv_registered = False
        self._shutting_down = False
        self._transport_error: Optional[str] = None

        self._state = RegistrationState.UNREGISTERED
        self._failure_reason: Optional[str] = None
        self._state_lock = threading.Lock()

    @property
    def state(self) -> RegistrationState:
        with self._state_lock:
            return self._state

    @property
    def failure_reason(self) -> Optional[str]:
        with self._state_lock:
            return self._failure_reason

    @property
    def advertisement_path(self) -> str:
        return f"{self.app_path}_advertisement"

    @property
    def adapter_path(self) -> Optional[str]:
        return self._adapter_path

    def _set_state(self, state: RegistrationState, reason: Optional[str] = None) -> None:
        with self._state_lock:
            self._state = state
            self._failure_reason = reason
        logger.debug(f"Registration state: {state.value}" + (f" ({reason})" if reason else ""))

    def set_value(self, key: str, value: AttributeValue) -> bool:
        """
        Push a new characteristic value from any thread.

        `key` is an object path, a path relative to the application root
        ("device/test_char") or a unique attribute name.
        """
        return self.notifier.set_value(key, value)

    def add_device_property_callback(
        self,
        prop: Union[DeviceProperty, str],
        callback: PropertyCallback,
    ) -> None:
        """Call `callback(value)` whenever a device's `prop` changes."""
        self.properties.add(prop, callback)

    def start(self) -> None:
        """
        Register with BlueZ and run the main loop until stop() is called.

        Raises RegistrationFailure if BlueZ (or the bus) refuses any
        registration step, and TransportLost if the connection drops.
        """
        if self.state is not RegistrationState.UNREGISTERED:
            raise DBusGattError(f"Peripheral cannot be started from state {self.state.value}")

        self._main_loop = GLib.MainLoop()
        try:
            self._connect()
            self._export()
            self._register_with_bluez()
        except RegistrationFailure as e:
            self._set_state(RegistrationState.FAILED, str(e))
            self._teardown(unregister_from_bluez=False)
            raise
        except TransportLost as e:
            self._set_state(RegistrationState.FAILED, str(e))
            self._teardown(unregister_from_bluez=False)
            raise
        except BaseException as e:
            # includes KeyboardInterrupt while waiting for BlueZ
            self._set_state(RegistrationState.FAILED, repr(e))
            self._teardown(unregister_from_bluez=self._app_registered)
            raise

        previous_handlers = self._install_signal_handlers()
        try:
            logger.info("Running main loop...")
            self._main_loop.run()
        except KeyboardInterrupt:
            self.stop()
        finally:
            self._restore_signal_handlers(previous_handlers)

        if self._transport_error is not None:
            self._set_state(RegistrationState.FAILED, self._transport_error)
            self._teardown(unregister_from_bluez=False)
            raise TransportLost(self._transport_error)

    def stop(self) -> None:
        """Unregister from BlueZ, unexport all objects and quit the main loop."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down...")
        self._teardown(unregister_from_bluez=True)
        if self._main_loop and self._main_loop.is_running():
            self._main_loop.quit()

    def _connect(self) -> None:
        if self._bus is None:
            try:
                self._bus = get_system_bus()
            except GLib.Error as e:
                raise TransportLost(f"Failed to connect to system bus: {e}") from e
        logger.info(f"Connected to system bus: {self._bus.get_unique_name()}")

        # Report connection loss instead of letting GDBus exit the process
        self._bus.set_exit_on_close(False)
        self._closed_handler_id = self._bus.connect("closed", self._on_bus_closed)

        if self.bus_name and not request_bus_name(self._bus, self.bus_name):
            raise RegistrationFailure(f"Could not acquire bus name {self.bus_name}")

        self._adapter_path = find_adapter_path(self._bus, self.adapter)
        if not self._adapter_path:
            raise RegistrationFailure(f"Adapter {self.adapter} not found")
        logger.info(f"Using adapter: {self._adapter_path}")

        if not ensure_adapter_powered(self._bus, self._adapter_path):
            raise RegistrationFailure(f"Failed to power on adapter {self.adapter}")

        self._bluez_watch_id = watch_bluez(self._bus, self._on_bluez_vanished)

    def _export(self) -> None:
        self._exporter = GattObjectExporter(self._bus, self.tree, self.dispatcher, verbose=self.verbose)
        if not self._exporter.register():
            raise RegistrationFailure("Failed to register GATT objects")
        self.notifier.emitter = self._exporter.emit_value_changed

        self._event_bridge = DeviceEventBridge(self._bus, self.properties, self._adapter_path)
        self._event_bridge.subscribe()

        if self.advertise:
            self._advertisement = Advertisement(
                self._bus,
                self.advertisement_path,
                local_name=self.local_name,
                service_uuids=[service.uuid for service in self.tree.services if service.primary],
                appearance=self.appearance,
                verbose=self.verbose,
            )
            if not self._advertisement.register():
                raise RegistrationFailure("Failed to register advertisement object")

    def _register_with_bluez(self) -> None:
        """Register GATT application and advertisement with BlueZ."""
        self._set_state(RegistrationState.REGISTERING)

        success, error = self._call_and_wait(register_application_async, self.app_path)
        if not success:
            raise RegistrationFailure(f"GATT registration failed: {error}")
        self._app_registered = True

        if self.advertise:
            success, error = self._call_and_wait(register_advertisement_async, self.advertisement_path)
            if not success:
                raise RegistrationFailure(f"Advertisement registration failed: {error}")
            self._adv_registered = True
            active = get_le_advertising_active_instances(self._bus, self._adapter_path)
            logger.info(f"Advertising, ActiveInstances: {active}")

        self._set_state(RegistrationState.REGISTERED)
        logger.info(f"Registration complete for {self.app_path}")

    def _call_and_wait(
        self,
        register: Callable[..., None],
        path: str,
    ) -> Tuple[bool, Optional[str]]:
        """
        Run an async BlueZ registration call to completion.

        The default main context is iterated so BlueZ's calls back into
        our objects (GetManagedObjects) are answered meanwhile.
        """
        outcome: List[Tuple[bool, Optional[str]]] = []
        register(self._bus, self._adapter_path, path, lambda ok, error: outcome.append((ok, error)))

        context = GLib.MainContext.default()
        while not outcome and self._transport_error is None:
            context.iteration(True)

        if self._transport_error is not None:
            raise TransportLost(self._transport_error)
        return outcome[0]

    def _teardown(self, unregister_from_bluez: bool) -> None:
        self.notifier.stop_all()
        self.notifier.emitter = None

        if unregister_from_bluez and self._bus and self._adapter_path:
            if self._adv_registered:
                unregister_advertisement_async(self._bus, self._adapter_path, self.advertisement_path)
            if self._app_registered:
                unregister_application_async(self._bus, self._adapter_path, self.app_path)
        self._adv_registered = False
        self._app_registered = False

        if self._event_bridge:
            self._event_bridge.unsubscribe()
            self._event_bridge = None
        if self._advertisement:
            self._advertisement.unregister()
            self._advertisement = None
        if self._exporter:
            self._exporter.unregister()
            self._exporter = None

        if self._bluez_watch_id is not None:
            Gio.bus_unwatch_name(self._bluez_watch_id)
            self._bluez_watch_id = None
        if self._closed_handler_id is not None and self._bus is not None:
            self._bus.disconnect(self._closed_handler_id)
            self._closed_handler_id = None

    def _on_transport_lost(self, reason: str) -> None:
        if self._transport_error is not None or self._shutting_down:
            return
        logger.error(f"Transport lost: {reason}")
        self._transport_error = reason
        if self._main_loop and self._main_loop.is_running():
            self._main_loop.quit()

    def _on_bus_closed(self, connection, remote_peer_vanished, error) -> None:
        reason = f"D-Bus connection closed: {error.message}" if error else "D-Bus connection closed"
        self._on_transport_lost(reason)

    def _on_bluez_vanished(self) -> None:
        self._on_transport_lost("BlueZ daemon left the bus")

    def _install_signal_handlers(self) -> dict:
        # signal.signal() only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, self._signal_handler)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict) -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    def _signal_handler(self, sig, frame) -> None:
        """Handle SIGINT/SIGTERM."""
        logger.info("Received shutdown signal")
        GLib.idle_add(self.stop)
