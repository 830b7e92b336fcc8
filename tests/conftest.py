"""Shared fixtures: an example service tree and main-loop stand-ins."""

import threading

import pytest

from dbus_gatt.model import (
    FLAG_NOTIFY,
    FLAG_READ,
    FLAG_WRITE,
    AttributeTree,
    Characteristic,
    Descriptor,
    ReadOnlyValueCharacteristic,
    Service,
)

ROOT = "/dbus_gatt/example"
DEVICE_INFO_UUID = "0000180a-0000-1000-8000-00805f9b34fb"
MFGR_NAME_UUID = "00002a29-0000-1000-8000-00805f9b34fb"
TEST_CHAR_UUID = "00002a30-0000-1000-8000-00805f9b34fb"
READ_ONLY_UUID = "00002a31-0000-1000-8000-00805f9b34fb"
SECOND_CHAR_UUID = "00002a32-0000-1000-8000-00805f9b34fb"
USER_DESC_UUID = "00002901-0000-1000-8000-00805f9b34fb"


class RecordingScheduler:
    """Collects scheduled callbacks; run_pending() plays the main loop.

    Like GLib.idle_add, a callback returning True is run again later.
    """

    def __init__(self):
        self.callbacks = []
        self._lock = threading.Lock()

    def __call__(self, callback):
        with self._lock:
            self.callbacks.append(callback)
        return len(self.callbacks)

    def run_pending(self):
        while True:
            with self._lock:
                if not self.callbacks:
                    return
                callback = self.callbacks.pop(0)
            if callback():
                with self._lock:
                    self.callbacks.append(callback)


class RecordingEmitter:
    def __init__(self):
        self.signals = []

    def __call__(self, path, payload):
        self.signals.append((path, payload))

    def values(self, path):
        return [payload for signal_path, payload in self.signals if signal_path == path]


class CharAccessors:
    """Read/write accessors of the example test_char."""

    def __init__(self):
        self.writes = []
        self.write_status = 0

    def read(self):
        return 1000

    def write(self, value, size):
        self.writes.append((value, size))
        return self.write_status


def example_services(accessors=None):
    accessors = accessors or CharAccessors()
    return [
        Service(
            "device",
            DEVICE_INFO_UUID,
            Characteristic("mfgr_name", MFGR_NAME_UUID, FLAG_READ, lambda: "hello"),
            Characteristic(
                "test_char",
                TEST_CHAR_UUID,
                [FLAG_READ, FLAG_WRITE, FLAG_NOTIFY],
                accessors.read,
                accessors.write,
                Descriptor("user_desc", USER_DESC_UUID, FLAG_READ, lambda: "Test characteristic"),
            ),
            ReadOnlyValueCharacteristic("test_read_only_value", READ_ONLY_UUID, FLAG_READ, 1234),
            Characteristic("counter", SECOND_CHAR_UUID, FLAG_NOTIFY),
        ),
    ]


@pytest.fixture
def accessors():
    return CharAccessors()


@pytest.fixture
def tree(accessors):
    return AttributeTree.build(ROOT, example_services(accessors))


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def emitter():
    return RecordingEmitter()
