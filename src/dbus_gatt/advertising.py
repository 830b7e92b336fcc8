"""
BLE advertisement object.

Implements org.bluez.LEAdvertisement1 so BlueZ can advertise the
peripheral's primary services under a local name.
"""

import logging
from typing import Dict, List, Optional

from gi.repository import Gio, GLib

from .exceptions import DBUS_ERROR_INVALID_ARGS, DBUS_ERROR_UNKNOWN_INTERFACE, DBUS_ERROR_UNKNOWN_METHOD

logger = logging.getLogger(__name__)

LE_ADV_IFACE = "org.bluez.LEAdvertisement1"
DBUS_PROPS_IFACE = "org.freedesktop.DBus.Properties"


class Advertisement:
    """
    Peripheral advertisement registered at `path`.

    Properties is served through the method handler: the interface is
    registered without a get_property callback, so GDBus routes
    Get/GetAll/Set to it.
    """

    def __init__(
        self,
        bus: Gio.DBusConnection,
        path: str,
        local_name: Optional[str] = None,
        service_uuids: Optional[List[str]] = None,
        appearance: Optional[int] = None,
        verbose: bool = False,
    ):
        self.bus = bus
        self.path = path
        self.local_name = local_name
        self.service_uuids = list(service_uuids or [])
        self.appearance = appearance
        self.verbose = verbose
        self._registrations: List[int] = []
        self.released = False

        self._type = "peripheral"
        self._discoverable = True
        self._includes = ["tx-power"]

    def register(self) -> bool:
        """Register advertisement object on D-Bus."""
        try:
            self._register_advertisement()
            logger.info(f"Advertisement object registered at {self.path}")
            return True
        except Exception as e:
            logger.error(f"Failed to register advertisement object: {e}")
            self.unregister()
            return False

    def unregister(self) -> None:
        """Unregister D-Bus objects."""
        for reg_id in self._registrations:
            try:
                self.bus.unregister_object(reg_id)
            except Exception as e:
                logger.debug(f"Error unregistering object {reg_id}: {e}")
        if self._registrations:
            logger.info("Advertisement object unregistered")
        self._registrations.clear()

    def get_properties(self) -> Dict[str, GLib.Variant]:
        """Get advertisement properties as GLib.Variant dict."""
        props = {
            "Type": GLib.Variant("s", self._type),
            "ServiceUUIDs": GLib.Variant("as", self.service_uuids),
            "Discoverable": GLib.Variant("b", self._discoverable),
            "Includes": GLib.Variant("as", self._includes),
        }
        if self.local_name:
            props["LocalName"] = GLib.Variant("s", self.local_name)
        if self.appearance is not None:
            props["Appearance"] = GLib.Variant("q", self.appearance)
        return props

    def introspection_xml(self) -> str:
        props = "".join(
            f'<property name="{name}" type="{value.get_type_string()}" access="read"/>'
            for name, value in self.get_properties().items()
        )
        return f"""
        <node>
            <interface name="{LE_ADV_IFACE}">
                <method name="Release"/>
                {props}
            </interface>
        </node>
        """

    def _register_advertisement(self) -> None:
        """Register LEAdvertisement1 interface."""
        node_info = Gio.DBusNodeInfo.new_for_xml(self.introspection_xml())
        reg_id = self.bus.register_object(
            self.path,
            node_info.interfaces[0],
            self.handle_method_call,
            None,
            None,
        )
        self._registrations.append(reg_id)

    def handle_method_call(self, conn, sender, path, iface, method, params, invoc) -> None:
        if iface == LE_ADV_IFACE:
            if method == "Release":
                logger.info("Advertisement released by BlueZ")
                self.released = True
                invoc.return_value(None)
            else:
                invoc.return_dbus_error(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {method}")
        elif iface == DBUS_PROPS_IFACE:
            props = self.get_properties()
            if method == "Get":
                _, prop_name = params.unpack()
                if prop_name in props:
                    invoc.return_value(GLib.Variant("(v)", (props[prop_name],)))
                else:
                    invoc.return_dbus_error(DBUS_ERROR_INVALID_ARGS, f"Unknown property: {prop_name}")
            elif method == "GetAll":
                invoc.return_value(GLib.Variant("(a{sv})", (props,)))
            elif method == "Set":
                # BlueZ may call Set on advertisement properties; we ignore it
                _, prop_name, _ = params.unpack()
                if self.verbose:
                    logger.info(f"Advertisement Set called (no-op): {prop_name}")
                invoc.return_value(None)
            else:
                invoc.return_dbus_error(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {method}")
        else:
            invoc.return_dbus_error(DBUS_ERROR_UNKNOWN_INTERFACE, f"Unknown interface: {iface}")
