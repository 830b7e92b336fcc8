"""
BlueZ D-Bus helpers for GATT and advertising operations.

Registration calls are made asynchronously: BlueZ calls back into our
exported objects (GetManagedObjects) while RegisterApplication is in
flight, so a blocking call from the main context thread would deadlock.
"""

import logging
from typing import Any, Callable, Optional

from gi.repository import Gio, GLib

logger = logging.getLogger(__name__)

# BlueZ D-Bus constants
BLUEZ_SERVICE = "org.bluez"
ADAPTER_IFACE = "org.bluez.Adapter1"
DEVICE_IFACE = "org.bluez.Device1"
GATT_MANAGER_IFACE = "org.bluez.GattManager1"
LE_ADV_MANAGER_IFACE = "org.bluez.LEAdvertisingManager1"
DBUS_OM_IFACE = "org.freedesktop.DBus.ObjectManager"
DBUS_PROPS_IFACE = "org.freedesktop.DBus.Properties"

DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
DBUS_IFACE = "org.freedesktop.DBus"

# RequestName flags and replies
DBUS_NAME_FLAG_DO_NOT_QUEUE = 0x4
DBUS_REQUEST_NAME_REPLY_PRIMARY_OWNER = 1
DBUS_REQUEST_NAME_REPLY_ALREADY_OWNER = 4

RegistrationCallback = Callable[[bool, Optional[str]], None]


def get_system_bus() -> Gio.DBusConnection:
    """Get a connection to the system D-Bus."""
    return Gio.bus_get_sync(Gio.BusType.SYSTEM, None)


def request_bus_name(bus: Gio.DBusConnection, name: str) -> bool:
    """Request a well-known bus name. Returns True if we own it."""
    try:
        result = bus.call_sync(
            DBUS_SERVICE,
            DBUS_PATH,
            DBUS_IFACE,
            "RequestName",
            GLib.Variant("(su)", (name, DBUS_NAME_FLAG_DO_NOT_QUEUE)),
            GLib.VariantType("(u)"),
            Gio.DBusCallFlags.NONE,
            5000,
            None,
        )
    except GLib.Error as e:
        logger.error(f"Error requesting bus name {name}: {e}")
        return False
    reply = result.unpack()[0]
    if reply in (DBUS_REQUEST_NAME_REPLY_PRIMARY_OWNER, DBUS_REQUEST_NAME_REPLY_ALREADY_OWNER):
        logger.info(f"Acquired bus name {name}")
        return True
    logger.error(f"Bus name {name} is owned by another process (reply {reply})")
    return False


def find_adapter_path(bus: Gio.DBusConnection, adapter_name: str = "hci0") -> Optional[str]:
    """
    Find the BlueZ adapter object path for the given adapter name.

    Returns the path like /org/bluez/hci0 or None if not found.
    """
    try:
        result = bus.call_sync(
            BLUEZ_SERVICE,
            "/",
            DBUS_OM_IFACE,
            "GetManagedObjects",
            None,
            GLib.VariantType("(a{oa{sa{sv}}})"),
            Gio.DBusCallFlags.NONE,
            5000,
            None,
        )
        objects = result.get_child_value(0)
        for i in range(objects.n_children()):
            entry = objects.get_child_value(i)
            path = entry.get_child_value(0).get_string()
            if path.endswith(f"/{adapter_name}"):
                ifaces = entry.get_child_value(1)
                for j in range(ifaces.n_children()):
                    iface_entry = ifaces.get_child_value(j)
                    iface_name = iface_entry.get_child_value(0).get_string()
                    if iface_name == ADAPTER_IFACE:
                        return path
    except GLib.Error as e:
        logger.error(f"Error finding adapter: {e}")
    return None


def get_adapter_property(bus: Gio.DBusConnection, adapter_path: str, prop_name: str) -> Any:
    """Get a property from the adapter."""
    try:
        result = bus.call_sync(
            BLUEZ_SERVICE,
            adapter_path,
            DBUS_PROPS_IFACE,
            "Get",
            GLib.Variant("(ss)", (ADAPTER_IFACE, prop_name)),
            GLib.VariantType("(v)"),
            Gio.DBusCallFlags.NONE,
            5000,
            None,
        )
        return result.get_child_value(0).get_variant()
    except GLib.Error as e:
        logger.error(f"Error getting adapter property {prop_name}: {e}")
        return None


def set_adapter_property(bus: Gio.DBusConnection, adapter_path: str, prop_name: str, value: GLib.Variant) -> bool:
    """Set a property on the adapter."""
    try:
        bus.call_sync(
            BLUEZ_SERVICE,
            adapter_path,
            DBUS_PROPS_IFACE,
            "Set",
            GLib.Variant("(ssv)", (ADAPTER_IFACE, prop_name, value)),
            None,
            Gio.DBusCallFlags.NONE,
            5000,
            None,
        )
        return True
    except GLib.Error as e:
        logger.error(f"Error setting adapter property {prop_name}: {e}")
        return False


def ensure_adapter_powered(bus: Gio.DBusConnection, adapter_path: str) -> bool:
    """Power the adapter on unless it already is."""
    powered = get_adapter_property(bus, adapter_path, "Powered")
    if powered is not None and powered.get_boolean():
        return True
    return set_adapter_property(bus, adapter_path, "Powered", GLib.Variant("b", True))


def get_le_advertising_active_instances(bus: Gio.DBusConnection, adapter_path: str) -> int:
    """Get the number of active advertising instances."""
    try:
        result = bus.call_sync(
            BLUEZ_SERVICE,
            adapter_path,
            DBUS_PROPS_IFACE,
            "Get",
            GLib.Variant("(ss)", (LE_ADV_MANAGER_IFACE, "ActiveInstances")),
            GLib.VariantType("(v)"),
            Gio.DBusCallFlags.NONE,
            5000,
            None,
        )
        return result.get_child_value(0).get_variant().get_byte()
    except GLib.Error as e:
        logger.error(f"Error getting ActiveInstances: {e}")
        return -1


def _call_manager_async(
    bus: Gio.DBusConnection,
    adapter_path: str,
    iface: str,
    method: str,
    parameters: GLib.Variant,
    timeout_ms: int,
    done_message: str,
    callback: Optional[RegistrationCallback],
    on_error: Callable[[str], None],
) -> None:
    def on_done(connection, result, user_data):
        try:
            connection.call_finish(result)
        except GLib.Error as e:
            on_error(f"{method} failed: {e}")
            if callback:
                callback(False, str(e))
            return
        logger.info(done_message)
        if callback:
            callback(True, None)

    bus.call(
        BLUEZ_SERVICE,
        adapter_path,
        iface,
        method,
        parameters,
        None,
        Gio.DBusCallFlags.NONE,
        timeout_ms,
        None,
        on_done,
        None,
    )


def register_application_async(
    bus: Gio.DBusConnection,
    adapter_path: str,
    app_path: str,
    callback: RegistrationCallback,
) -> None:
    """
    Register a GATT application with BlueZ asynchronously.

    The callback receives (success: bool, error_message: Optional[str]).
    """
    _call_manager_async(
        bus,
        adapter_path,
        GATT_MANAGER_IFACE,
        "RegisterApplication",
        GLib.Variant("(oa{sv})", (app_path, {})),
        30000,
        f"GATT application registered at {app_path}",
        callback,
        logger.error,
    )


def unregister_application_async(
    bus: Gio.DBusConnection,
    adapter_path: str,
    app_path: str,
    callback: Optional[RegistrationCallback] = None,
) -> None:
    """Unregister a GATT application from BlueZ asynchronously."""
    _call_manager_async(
        bus,
        adapter_path,
        GATT_MANAGER_IFACE,
        "UnregisterApplication",
        GLib.Variant("(o)", (app_path,)),
        5000,
        f"GATT application unregistered from {app_path}",
        callback,
        logger.warning,
    )


def register_advertisement_async(
    bus: Gio.DBusConnection,
    adapter_path: str,
    adv_path: str,
    callback: RegistrationCallback,
) -> None:
    """Register an LE advertisement with BlueZ asynchronously."""
    _call_manager_async(
        bus,
        adapter_path,
        LE_ADV_MANAGER_IFACE,
        "RegisterAdvertisement",
        GLib.Variant("(oa{sv})", (adv_path, {})),
        30000,
        f"Advertisement registered at {adv_path}",
        callback,
        logger.error,
    )


def unregister_advertisement_async(
    bus: Gio.DBusConnection,
    adapter_path: str,
    adv_path: str,
    callback: Optional[RegistrationCallback] = None,
) -> None:
    """Unregister an LE advertisement from BlueZ asynchronously."""
    _call_manager_async(
        bus,
        adapter_path,
        LE_ADV_MANAGER_IFACE,
        "UnregisterAdvertisement",
        GLib.Variant("(o)", (adv_path,)),
        5000,
        f"Advertisement unregistered from {adv_path}",
        callback,
        logger.warning,
    )


def watch_bluez(
    bus: Gio.DBusConnection,
    on_vanished: Callable[[], None],
) -> int:
    """Call `on_vanished` when the org.bluez name loses its owner. Returns the watch id."""
    def vanished(connection, name):
        logger.error(f"{name} disappeared from the bus")
        on_vanished()

    return Gio.bus_watch_name_on_connection(
        bus,
        BLUEZ_SERVICE,
        Gio.BusNameWatcherFlags.NONE,
        None,
        vanished,
    )
