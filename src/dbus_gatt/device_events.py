"""
Device event bridge.

Subscribes to PropertiesChanged signals that BlueZ emits for
org.bluez.Device1 objects and forwards each changed property to the
PropertyCallbackRegistry.
"""

import logging
from typing import Any, Dict, List, Optional

from gi.repository import Gio, GLib

from .bluez import BLUEZ_SERVICE, DBUS_PROPS_IFACE, DEVICE_IFACE
from .properties import DispatchResult, PropertyCallbackRegistry

logger = logging.getLogger(__name__)


class DeviceEventBridge:
    """Fans out Device1 property changes to registered callbacks."""

    def __init__(
        self,
        bus: Gio.DBusConnection,
        registry: PropertyCallbackRegistry,
        adapter_path: Optional[str] = None,
    ):
        self.bus = bus
        self.registry = registry
        self.adapter_path = adapter_path
        self._subscription_id: Optional[int] = None

    @property
    def subscribed(self) -> bool:
        return self._subscription_id is not None

    def subscribe(self) -> None:
        """Subscribe to Device1 PropertiesChanged. Only the first call subscribes."""
        if self._subscription_id is not None:
            return
        self._subscription_id = self.bus.signal_subscribe(
            BLUEZ_SERVICE,
            DBUS_PROPS_IFACE,
            "PropertiesChanged",
            None,
            DEVICE_IFACE,
            Gio.DBusSignalFlags.NONE,
            self._on_properties_changed,
            None,
        )
        logger.info(f"Subscribed to {DEVICE_IFACE} property changes")

    def unsubscribe(self) -> None:
        if self._subscription_id is None:
            return
        self.bus.signal_unsubscribe(self._subscription_id)
        self._subscription_id = None
        logger.info(f"Unsubscribed from {DEVICE_IFACE} property changes")

    def _on_properties_changed(
        self,
        connection: Gio.DBusConnection,
        sender_name: str,
        object_path: str,
        interface_name: str,
        signal_name: str,
        parameters: GLib.Variant,
        user_data: Any,
    ) -> None:
        try:
            iface, changed, invalidated = parameters.unpack()
        except (TypeError, ValueError) as e:
            logger.warning(f"Malformed PropertiesChanged from {object_path}: {e}")
            return
        self.handle_properties_changed(object_path, iface, changed, invalidated)

    def handle_properties_changed(
        self,
        object_path: str,
        interface: str,
        changed: Dict[str, Any],
        invalidated: List[str],
    ) -> Dict[str, DispatchResult]:
        """Dispatch every changed property of a device under our adapter."""
        if interface != DEVICE_IFACE:
            return {}
        if self.adapter_path and not object_path.startswith(f"{self.adapter_path}/"):
            return {}

        results = {}
        for name, value in changed.items():
            logger.debug(f"{object_path}: {name} = {value!r}")
            results[name] = self.registry.dispatch(name, value)
        return results
