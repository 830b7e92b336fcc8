"""
Device property callback registry.

Maps org.bluez.Device1 properties to application callbacks. Each known
property declares the Python type its value must have; a value of any
other type is reported as a MISMATCH and never reaches the callbacks.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

PropertyCallback = Callable[[Any], None]


class DeviceProperty(Enum):
    """org.bluez.Device1 properties that callbacks can be registered for."""

    CONNECTED = ("Connected", bool)
    SERVICES_RESOLVED = ("ServicesResolved", bool)
    PAIRED = ("Paired", bool)
    BONDED = ("Bonded", bool)
    TRUSTED = ("Trusted", bool)
    BLOCKED = ("Blocked", bool)
    RSSI = ("RSSI", int)
    TX_POWER = ("TxPower", int)
    NAME = ("Name", str)
    ALIAS = ("Alias", str)
    ADDRESS = ("Address", str)

    def __init__(self, property_name: str, value_type: type):
        self.property_name = property_name
        self.value_type = value_type

    @classmethod
    def from_name(cls, name: str) -> Optional["DeviceProperty"]:
        for prop in cls:
            if prop.property_name == name:
                return prop
        return None

    def accepts(self, value: Any) -> bool:
        if self.value_type is int and isinstance(value, bool):
            return False
        return isinstance(value, self.value_type)


class DispatchResult(Enum):
    DISPATCHED = "dispatched"
    NO_CALLBACKS = "no-callbacks"
    UNKNOWN_PROPERTY = "unknown-property"
    MISMATCH = "mismatch"


class PropertyCallbackRegistry:
    """Ordered callbacks per device property."""

    def __init__(self):
        self._lock = threading.Lock()
        self._callbacks: Dict[DeviceProperty, List[PropertyCallback]] = {}

    @staticmethod
    def _coerce(prop: Union[DeviceProperty, str]) -> DeviceProperty:
        if isinstance(prop, DeviceProperty):
            return prop
        found = DeviceProperty.from_name(prop)
        if found is None:
            raise ValueError(f"Unknown device property: {prop}")
        return found

    def add(self, prop: Union[DeviceProperty, str], callback: PropertyCallback) -> None:
        if not callable(callback):
            raise TypeError("callback must be callable")
        prop = self._coerce(prop)
        with self._lock:
            self._callbacks.setdefault(prop, []).append(callback)

    def remove(self, prop: Union[DeviceProperty, str], callback: PropertyCallback) -> bool:
        prop = self._coerce(prop)
        with self._lock:
            callbacks = self._callbacks.get(prop, [])
            if callback in callbacks:
                callbacks.remove(callback)
                return True
        return False

    def callbacks(self, prop: Union[DeviceProperty, str]) -> List[PropertyCallback]:
        prop = self._coerce(prop)
        with self._lock:
            return list(self._callbacks.get(prop, []))

    def clear(self) -> None:
        with self._lock:
            self._callbacks.clear()

    def dispatch(self, name: str, value: Any) -> DispatchResult:
        """Invoke every callback registered for the property `name`."""
        prop = DeviceProperty.from_name(name)
        if prop is None:
            return DispatchResult.UNKNOWN_PROPERTY

        callbacks = self.callbacks(prop)
        if not callbacks:
            return DispatchResult.NO_CALLBACKS

        if not prop.accepts(value):
            logger.warning(
                f"Unsupported value for device property {name}: "
                f"expected {prop.value_type.__name__}, got {type(value).__name__}"
            )
            return DispatchResult.MISMATCH

        for callback in callbacks:
            try:
                callback(value)
            except Exception:
                logger.exception(f"Callback for device property {name} failed")
        return DispatchResult.DISPATCHED
