"""
Error taxonomy for the GATT peripheral.

Errors raised while answering a BlueZ call carry the D-Bus error name
that is sent back to the caller.
"""

from typing import Optional

DBUS_ERROR_FAILED = "org.bluez.Error.Failed"
DBUS_ERROR_NOT_SUPPORTED = "org.bluez.Error.NotSupported"
DBUS_ERROR_NOT_PERMITTED = "org.bluez.Error.NotPermitted"
DBUS_ERROR_INVALID_OFFSET = "org.bluez.Error.InvalidOffset"
DBUS_ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
DBUS_ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
DBUS_ERROR_UNKNOWN_INTERFACE = "org.freedesktop.DBus.Error.UnknownInterface"
DBUS_ERROR_INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"


class DBusGattError(Exception):
    """Base class for all errors raised by this package."""

    dbus_error_name = DBUS_ERROR_FAILED


class ConfigurationError(DBusGattError):
    """Malformed attribute tree or accessor/flag mismatch."""


class NotSupported(DBusGattError):
    """The caller invoked an operation the attribute's flags do not allow."""

    dbus_error_name = DBUS_ERROR_NOT_SUPPORTED


class AccessorFailure(DBusGattError):
    """An application read or write accessor reported failure."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class InvalidOffset(AccessorFailure):
    """A read requested an offset past the end of the value."""

    dbus_error_name = DBUS_ERROR_INVALID_OFFSET


class UnknownAttribute(DBusGattError, KeyError):
    """No attribute exists at the given path or name."""

    dbus_error_name = DBUS_ERROR_UNKNOWN_OBJECT

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class RegistrationFailure(DBusGattError):
    """BlueZ rejected the application or advertisement registration."""


class TransportLost(DBusGattError):
    """The D-Bus connection or the BlueZ daemon went away."""
