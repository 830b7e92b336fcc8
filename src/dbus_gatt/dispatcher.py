"""
Callback dispatcher.

Bridges BlueZ ReadValue/WriteValue/StartNotify/StopNotify calls to the
application's accessors. Every failure leaves this module as a
DBusGattError so the exporter can turn it into a D-Bus error reply.
"""

import logging
from typing import Any, Dict, Optional

from .exceptions import AccessorFailure, ConfigurationError, InvalidOffset, NotSupported
from .model import AccessorKind, AttributeKind, AttributeNode, AttributeTree
from .notifier import NotificationEngine
from .values import AttributeValue, encode_value

logger = logging.getLogger(__name__)


class CallbackDispatcher:
    """Invokes accessors for remote calls and translates their results."""

    def __init__(self, tree: AttributeTree, notifier: NotificationEngine, verbose: bool = False):
        self.tree = tree
        self.notifier = notifier
        self.verbose = verbose

    def _log_call(self, message: str) -> None:
        if self.verbose:
            logger.info(message)
        else:
            logger.debug(message)

    def invoke_read(self, path: str) -> AttributeValue:
        """Call the read accessor of the node at `path` and return its value as is."""
        node = self.tree[path]
        if not node.readable:
            raise NotSupported(f"{path} is not readable")

        accessor = node.accessor
        if accessor.kind is AccessorKind.FIXED_VALUE:
            return accessor.value
        if accessor.read is None:
            raise ConfigurationError(f"{path} is readable but has no read accessor")
        try:
            return accessor.read()
        except Exception as e:
            logger.exception(f"Read accessor for {path} failed")
            raise AccessorFailure(f"Read of {path} failed: {e}") from e

    def read_value(self, path: str, options: Optional[Dict[str, Any]] = None) -> bytes:
        """Answer ReadValue with the encoded accessor value."""
        options = options or {}
        self._log_call(f"ReadValue {path} options={options}")

        node = self.tree[path]
        if node.accessor.kind is AccessorKind.FIXED_VALUE and node.readable:
            payload = node.accessor.encoded
        else:
            value = self.invoke_read(path)
            try:
                payload = encode_value(value)
            except TypeError as e:
                raise AccessorFailure(f"Read of {path} returned an unsupported value: {e}") from e

        offset = int(options.get("offset", 0))
        if offset:
            if offset > len(payload):
                raise InvalidOffset(f"Offset {offset} is past the end of {path} ({len(payload)} bytes)")
            payload = payload[offset:]
        return payload

    def write_value(self, path: str, data: bytes, options: Optional[Dict[str, Any]] = None) -> int:
        """
        Answer WriteValue by passing the bytes to the write accessor.

        A status of None or 0 is success; anything else, or an exception
        from the accessor, becomes an AccessorFailure.
        """
        options = options or {}
        data = bytes(data)
        self._log_call(f"WriteValue {path} ({len(data)} bytes) options={options}")

        node = self.tree[path]
        if not node.writable:
            raise NotSupported(f"{path} is not writable")
        accessor = node.accessor
        if accessor.kind is not AccessorKind.CALLBACKS or accessor.write is None:
            raise ConfigurationError(f"{path} is writable but has no write accessor")

        try:
            status = accessor.write(data, len(data))
        except Exception as e:
            logger.exception(f"Write accessor for {path} failed")
            raise AccessorFailure(f"Write to {path} failed: {e}") from e

        if status is None:
            status = 0
        if status != 0:
            logger.warning(f"Write accessor for {path} returned status {status}")
            raise AccessorFailure(f"Write to {path} failed with status {status}", status=status)

        if node.kind is AttributeKind.CHARACTERISTIC:
            self.notifier.record_value(path, data)
        return status

    def start_notify(self, path: str) -> None:
        self._log_call(f"StartNotify {path}")
        node = self._notify_target(path)
        self.notifier.start_notify(node.path)

    def stop_notify(self, path: str) -> None:
        self._log_call(f"StopNotify {path}")
        node = self._notify_target(path)
        self.notifier.stop_notify(node.path)

    def _notify_target(self, path: str) -> AttributeNode:
        node = self.tree[path]
        if node.kind is not AttributeKind.CHARACTERISTIC or not node.notifiable:
            raise NotSupported(f"{path} does not support notifications")
        return node
