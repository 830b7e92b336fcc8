from unittest.mock import MagicMock

import pytest

pytest.importorskip("gi")
from gi.repository import GLib  # noqa: E402

from dbus_gatt import bluez  # noqa: E402


def managed_objects(*entries):
    return GLib.Variant("(a{oa{sa{sv}}})", (dict(entries),))


def test_find_adapter_path():
    bus = MagicMock()
    bus.call_sync.return_value = managed_objects(
        ("/org/bluez/hci0/dev_00_11_22_33_44_55", {bluez.DEVICE_IFACE: {}}),
        ("/org/bluez/hci0", {bluez.ADAPTER_IFACE: {"Powered": GLib.Variant("b", True)}}),
    )
    assert bluez.find_adapter_path(bus, "hci0") == "/org/bluez/hci0"
    assert bluez.find_adapter_path(bus, "hci1") is None


def test_find_adapter_path_bus_error():
    bus = MagicMock()
    bus.call_sync.side_effect = GLib.Error("org.bluez was not provided by any .service files")
    assert bluez.find_adapter_path(bus) is None


@pytest.mark.parametrize("reply, owned", [(1, True), (4, True), (3, False)])
def test_request_bus_name(reply, owned):
    bus = MagicMock()
    bus.call_sync.return_value = GLib.Variant("(u)", (reply,))
    assert bluez.request_bus_name(bus, "dbus_gatt.example") is owned
    assert bus.call_sync.call_args.args[3] == "RequestName"


def test_ensure_adapter_powered_skips_set_when_on():
    bus = MagicMock()
    bus.call_sync.return_value = GLib.Variant("(v)", (GLib.Variant("b", True),))
    assert bluez.ensure_adapter_powered(bus, "/org/bluez/hci0") is True
    assert bus.call_sync.call_count == 1


def test_ensure_adapter_powered_turns_adapter_on():
    bus = MagicMock()
    bus.call_sync.side_effect = [GLib.Variant("(v)", (GLib.Variant("b", False),)), None]
    assert bluez.ensure_adapter_powered(bus, "/org/bluez/hci0") is True
    method, params = bus.call_sync.call_args.args[3:5]
    assert method == "Set"
    assert params.unpack() == (bluez.ADAPTER_IFACE, "Powered", True)


def _finish_with(bus, error=None):
    """Make bus.call complete immediately, like the main loop would."""
    def call(*args):
        on_done = args[9]
        if error is not None:
            bus.call_finish.side_effect = error
        on_done(bus, "result", None)
    bus.call.side_effect = call


def test_register_application_success():
    bus = MagicMock()
    _finish_with(bus)
    outcomes = []
    bluez.register_application_async(bus, "/org/bluez/hci0", "/dbus_gatt/example",
                                     lambda ok, error: outcomes.append((ok, error)))
    assert outcomes == [(True, None)]
    args = bus.call.call_args.args
    assert args[:4] == ("org.bluez", "/org/bluez/hci0", bluez.GATT_MANAGER_IFACE, "RegisterApplication")
    assert args[4].unpack() == ("/dbus_gatt/example", {})


def test_register_advertisement_failure():
    bus = MagicMock()
    _finish_with(bus, GLib.Error("Maximum advertisements reached"))
    outcomes = []
    bluez.register_advertisement_async(bus, "/org/bluez/hci0", "/adv", lambda ok, error: outcomes.append((ok, error)))
    assert len(outcomes) == 1
    ok, error = outcomes[0]
    assert ok is False
    assert "Maximum advertisements" in error


def test_unregister_without_callback():
    bus = MagicMock()
    _finish_with(bus)
    bluez.unregister_application_async(bus, "/org/bluez/hci0", "/dbus_gatt/example")
    assert bus.call.call_args.args[3] == "UnregisterApplication"
