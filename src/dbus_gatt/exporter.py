"""
D-Bus export of the attribute tree.

Implements:
- org.freedesktop.DBus.ObjectManager on the application root
- org.bluez.GattService1 for every service
- org.bluez.GattCharacteristic1 for every characteristic
- org.bluez.GattDescriptor1 for every descriptor

Method calls are answered through the CallbackDispatcher; errors it
raises become D-Bus error replies and never reach the main loop.
"""

import logging
from typing import Dict, List

from gi.repository import Gio, GLib

from .dispatcher import CallbackDispatcher
from .exceptions import (
    DBUS_ERROR_FAILED,
    DBUS_ERROR_INVALID_ARGS,
    DBUS_ERROR_NOT_PERMITTED,
    DBUS_ERROR_UNKNOWN_INTERFACE,
    DBUS_ERROR_UNKNOWN_METHOD,
    DBUS_ERROR_UNKNOWN_OBJECT,
    DBusGattError,
)
from .model import AttributeKind, AttributeNode, AttributeTree

logger = logging.getLogger(__name__)

# D-Bus interfaces
GATT_SERVICE_IFACE = "org.bluez.GattService1"
GATT_CHAR_IFACE = "org.bluez.GattCharacteristic1"
GATT_DESC_IFACE = "org.bluez.GattDescriptor1"
DBUS_OM_IFACE = "org.freedesktop.DBus.ObjectManager"
DBUS_PROPS_IFACE = "org.freedesktop.DBus.Properties"

NODE_IFACES = {
    AttributeKind.SERVICE: GATT_SERVICE_IFACE,
    AttributeKind.CHARACTERISTIC: GATT_CHAR_IFACE,
    AttributeKind.DESCRIPTOR: GATT_DESC_IFACE,
}

OBJECT_MANAGER_XML = f"""
<node>
    <interface name="{DBUS_OM_IFACE}">
        <method name="GetManagedObjects">
            <arg type="a{{oa{{sa{{sv}}}}}}" direction="out"/>
        </method>
    </interface>
</node>
"""

_READ_VALUE_XML = """
        <method name="ReadValue">
            <arg type="a{sv}" direction="in"/>
            <arg type="ay" direction="out"/>
        </method>"""
_WRITE_VALUE_XML = """
        <method name="WriteValue">
            <arg type="ay" direction="in"/>
            <arg type="a{sv}" direction="in"/>
        </method>"""
_NOTIFY_XML = """
        <method name="StartNotify"/>
        <method name="StopNotify"/>"""


class GattObjectExporter:
    """
    Publishes an AttributeTree as BlueZ GATT objects.

    Registers D-Bus objects at:
    - tree.root_path (ObjectManager root)
    - tree.root_path/<service>
    - tree.root_path/<service>/<characteristic>
    - tree.root_path/<service>/<characteristic>/<descriptor>
    """

    def __init__(
        self,
        bus: Gio.DBusConnection,
        tree: AttributeTree,
        dispatcher: CallbackDispatcher,
        verbose: bool = False,
    ):
        self.bus = bus
        self.tree = tree
        self.dispatcher = dispatcher
        self.verbose = verbose
        self._registrations: List[int] = []

    @property
    def registered(self) -> bool:
        return bool(self._registrations)

    def register(self) -> bool:
        """Register all GATT objects on D-Bus."""
        try:
            self._register_object_manager()
            for node in self.tree:
                self._register_node(node)
            logger.info(f"GATT objects registered under {self.tree.root_path} ({len(self.tree)} attributes)")
            return True
        except Exception as e:
            logger.error(f"Failed to register GATT objects: {e}")
            self.unregister()
            return False

    def unregister(self) -> None:
        """Unregister all D-Bus objects."""
        for reg_id in self._registrations:
            try:
                self.bus.unregister_object(reg_id)
            except Exception as e:
                logger.debug(f"Error unregistering object {reg_id}: {e}")
        if self._registrations:
            logger.info("GATT objects unregistered")
        self._registrations.clear()

    def _register_object_manager(self) -> None:
        """Register ObjectManager interface at the application root."""
        node_info = Gio.DBusNodeInfo.new_for_xml(OBJECT_MANAGER_XML)
        reg_id = self.bus.register_object(
            self.tree.root_path,
            node_info.interfaces[0],
            self._handle_om_method_call,
            None,
            None,
        )
        self._registrations.append(reg_id)

    def _register_node(self, node: AttributeNode) -> None:
        node_info = Gio.DBusNodeInfo.new_for_xml(self.introspection_xml(node))
        reg_id = self.bus.register_object(
            node.path,
            node_info.interfaces[0],
            self.handle_method_call,
            None,
            None,
        )
        self._registrations.append(reg_id)

    def introspection_xml(self, node: AttributeNode) -> str:
        """Introspection data for a node's GATT interface."""
        iface = NODE_IFACES[node.kind]
        methods = ""
        if node.kind is not AttributeKind.SERVICE:
            methods = _READ_VALUE_XML + _WRITE_VALUE_XML
        if node.kind is AttributeKind.CHARACTERISTIC:
            methods += _NOTIFY_XML
        props = "".join(
            f'\n        <property name="{name}" type="{value.get_type_string()}" access="read"/>'
            for name, value in self.node_properties(node).items()
        )
        return f"""
<node>
    <interface name="{iface}">{methods}{props}
    </interface>
</node>
"""

    def node_properties(self, node: AttributeNode) -> Dict[str, GLib.Variant]:
        """D-Bus properties of a node's GATT interface."""
        if node.kind is AttributeKind.SERVICE:
            return {
                "UUID": GLib.Variant("s", node.uuid),
                "Primary": GLib.Variant("b", node.primary),
                "Characteristics": GLib.Variant("ao", [child.path for child in node.children]),
            }
        if node.kind is AttributeKind.CHARACTERISTIC:
            props = {
                "UUID": GLib.Variant("s", node.uuid),
                "Service": GLib.Variant("o", node.parent_path),
                "Flags": GLib.Variant("as", sorted(node.flags)),
                "Descriptors": GLib.Variant("ao", [child.path for child in node.children]),
            }
            if node.notifiable:
                props["Notifying"] = GLib.Variant("b", self.dispatcher.notifier.is_notifying(node.path))
            return props
        return {
            "UUID": GLib.Variant("s", node.uuid),
            "Characteristic": GLib.Variant("o", node.parent_path),
            "Flags": GLib.Variant("as", sorted(node.flags)),
        }

    def get_managed_objects(self) -> Dict[str, Dict[str, Dict[str, GLib.Variant]]]:
        """Build the managed objects dictionary for GetManagedObjects."""
        return {
            node.path: {NODE_IFACES[node.kind]: self.node_properties(node)}
            for node in self.tree
        }

    def _handle_om_method_call(
        self,
        connection: Gio.DBusConnection,
        sender: str,
        object_path: str,
        interface_name: str,
        method_name: str,
        parameters: GLib.Variant,
        invocation: Gio.DBusMethodInvocation,
    ) -> None:
        """Handle ObjectManager.GetManagedObjects."""
        if method_name == "GetManagedObjects":
            if self.verbose:
                logger.info(f"GetManagedObjects called by {sender}")
            objects = self.get_managed_objects()
            invocation.return_value(GLib.Variant("(a{oa{sa{sv}}})", (objects,)))
        else:
            invocation.return_dbus_error(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {method_name}")

    def handle_method_call(
        self,
        connection: Gio.DBusConnection,
        sender: str,
        object_path: str,
        interface_name: str,
        method_name: str,
        parameters: GLib.Variant,
        invocation: Gio.DBusMethodInvocation,
    ) -> None:
        """Handle GATT and Properties calls on an attribute object."""
        node = self.tree.get(object_path)
        if node is None:
            invocation.return_dbus_error(DBUS_ERROR_UNKNOWN_OBJECT, f"Unknown object: {object_path}")
            return

        if interface_name == NODE_IFACES[node.kind]:
            self._handle_gatt_call(node, sender, method_name, parameters, invocation)
        elif interface_name == DBUS_PROPS_IFACE:
            self._handle_props_call(node, method_name, parameters, invocation)
        else:
            invocation.return_dbus_error(DBUS_ERROR_UNKNOWN_INTERFACE, f"Unknown interface: {interface_name}")

    def _handle_gatt_call(
        self,
        node: AttributeNode,
        sender: str,
        method_name: str,
        parameters: GLib.Variant,
        invocation: Gio.DBusMethodInvocation,
    ) -> None:
        if self.verbose:
            logger.info(f"{method_name} on {node.path} called by {sender}")
        try:
            if method_name == "ReadValue":
                (options,) = parameters.unpack()
                payload = self.dispatcher.read_value(node.path, options)
                invocation.return_value(GLib.Variant("(ay)", (payload,)))
            elif method_name == "WriteValue":
                value, options = parameters.unpack()
                self.dispatcher.write_value(node.path, bytes(value), options)
                invocation.return_value(None)
            elif method_name == "StartNotify":
                self.dispatcher.start_notify(node.path)
                invocation.return_value(None)
            elif method_name == "StopNotify":
                self.dispatcher.stop_notify(node.path)
                invocation.return_value(None)
            else:
                invocation.return_dbus_error(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {method_name}")
        except DBusGattError as e:
            logger.warning(f"{method_name} on {node.path} failed: {e}")
            invocation.return_dbus_error(e.dbus_error_name, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in {method_name} on {node.path}")
            invocation.return_dbus_error(DBUS_ERROR_FAILED, str(e))

    def _handle_props_call(
        self,
        node: AttributeNode,
        method_name: str,
        parameters: GLib.Variant,
        invocation: Gio.DBusMethodInvocation,
    ) -> None:
        props = self.node_properties(node)
        if method_name == "Get":
            _, prop = parameters.unpack()
            if prop in props:
                invocation.return_value(GLib.Variant("(v)", (props[prop],)))
            else:
                invocation.return_dbus_error(DBUS_ERROR_INVALID_ARGS, f"Unknown property: {prop}")
        elif method_name == "GetAll":
            invocation.return_value(GLib.Variant("(a{sv})", (props,)))
        elif method_name == "Set":
            invocation.return_dbus_error(DBUS_ERROR_NOT_PERMITTED, "GATT attribute properties are read-only")
        else:
            invocation.return_dbus_error(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {method_name}")

    def emit_value_changed(self, path: str, payload: bytes) -> None:
        """Emit PropertiesChanged(Value) for a characteristic. Main loop only."""
        self.bus.emit_signal(
            None,
            path,
            DBUS_PROPS_IFACE,
            "PropertiesChanged",
            GLib.Variant(
                "(sa{sv}as)",
                (
                    GATT_CHAR_IFACE,
                    {"Value": GLib.Variant("ay", payload)},
                    [],
                ),
            ),
        )
        if self.verbose:
            logger.info(f"Notified {len(payload)} bytes on {path}")
