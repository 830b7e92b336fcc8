"""Tests for the D-Bus object exporter with a mocked connection."""

from unittest.mock import MagicMock

import pytest

pytest.importorskip("gi")
from gi.repository import Gio, GLib  # noqa: E402

from conftest import MFGR_NAME_UUID, ROOT, TEST_CHAR_UUID  # noqa: E402
from dbus_gatt.dispatcher import CallbackDispatcher  # noqa: E402
from dbus_gatt.exporter import (  # noqa: E402
    DBUS_PROPS_IFACE,
    GATT_CHAR_IFACE,
    GATT_DESC_IFACE,
    GATT_SERVICE_IFACE,
    GattObjectExporter,
)
from dbus_gatt.notifier import NotificationEngine  # noqa: E402

SERVICE = f"{ROOT}/device"
TEST_CHAR = f"{ROOT}/device/test_char"
MFGR_NAME = f"{ROOT}/device/mfgr_name"
READ_ONLY = f"{ROOT}/device/test_read_only_value"
USER_DESC = f"{ROOT}/device/test_char/user_desc"


class FakeInvocation:
    def __init__(self):
        self.value = None
        self.error = None

    def return_value(self, value):
        self.value = value

    def return_dbus_error(self, name, message):
        self.error = (name, message)


@pytest.fixture
def bus():
    bus = MagicMock()
    bus.register_object.side_effect = range(1, 1000)
    return bus


@pytest.fixture
def notifier(tree, emitter, scheduler):
    return NotificationEngine(tree, emitter=emitter, scheduler=scheduler)


@pytest.fixture
def exporter(bus, tree, notifier):
    return GattObjectExporter(bus, tree, CallbackDispatcher(tree, notifier))


def call(exporter, path, iface, method, params=None):
    invocation = FakeInvocation()
    exporter.handle_method_call(None, ":1.42", path, iface, method, params, invocation)
    return invocation


class TestRegistration:
    def test_registers_root_and_every_node(self, exporter, bus, tree):
        assert exporter.register() is True
        paths = [c.args[0] for c in bus.register_object.call_args_list]
        assert paths == [ROOT] + tree.paths()
        assert exporter.registered

    def test_unregister(self, exporter, bus, tree):
        exporter.register()
        exporter.unregister()
        assert bus.unregister_object.call_count == len(tree) + 1
        assert not exporter.registered

    def test_failure_rolls_back(self, exporter, bus):
        bus.register_object.side_effect = [1, 2, GLib.Error("object already exported")]
        assert exporter.register() is False
        assert [c.args[0] for c in bus.unregister_object.call_args_list] == [1, 2]

    def test_introspection_lists_interface_methods(self, exporter, tree):
        char_info = Gio.DBusNodeInfo.new_for_xml(exporter.introspection_xml(tree[TEST_CHAR])).interfaces[0]
        assert char_info.name == GATT_CHAR_IFACE
        assert {m.name for m in char_info.methods} == {"ReadValue", "WriteValue", "StartNotify", "StopNotify"}
        assert "Notifying" in {p.name for p in char_info.properties}

        desc_info = Gio.DBusNodeInfo.new_for_xml(exporter.introspection_xml(tree[USER_DESC])).interfaces[0]
        assert desc_info.name == GATT_DESC_IFACE
        assert {m.name for m in desc_info.methods} == {"ReadValue", "WriteValue"}

        read_only_info = Gio.DBusNodeInfo.new_for_xml(exporter.introspection_xml(tree[MFGR_NAME])).interfaces[0]
        assert {m.name for m in read_only_info.methods} == {"ReadValue", "WriteValue", "StartNotify", "StopNotify"}

        service_info = Gio.DBusNodeInfo.new_for_xml(exporter.introspection_xml(tree[SERVICE])).interfaces[0]
        assert service_info.name == GATT_SERVICE_IFACE
        assert len(service_info.methods) == 0


class TestManagedObjects:
    def test_covers_whole_tree(self, exporter, tree):
        objects = exporter.get_managed_objects()
        assert sorted(objects) == sorted(tree.paths())

    def test_service_properties(self, exporter):
        props = exporter.get_managed_objects()[SERVICE][GATT_SERVICE_IFACE]
        assert props["Primary"].unpack() is True
        assert props["Characteristics"].unpack() == [
            MFGR_NAME, TEST_CHAR, READ_ONLY, f"{ROOT}/device/counter",
        ]

    def test_characteristic_properties(self, exporter):
        props = exporter.get_managed_objects()[TEST_CHAR][GATT_CHAR_IFACE]
        assert props["UUID"].unpack() == TEST_CHAR_UUID
        assert props["Service"].unpack() == SERVICE
        assert props["Flags"].unpack() == ["notify", "read", "write"]
        assert props["Descriptors"].unpack() == [USER_DESC]
        assert props["Notifying"].unpack() is False

        mfgr = exporter.get_managed_objects()[MFGR_NAME][GATT_CHAR_IFACE]
        assert mfgr["UUID"].unpack() == MFGR_NAME_UUID
        assert "Notifying" not in mfgr

    def test_descriptor_properties(self, exporter):
        props = exporter.get_managed_objects()[USER_DESC][GATT_DESC_IFACE]
        assert props["Characteristic"].unpack() == TEST_CHAR
        assert props["Flags"].unpack() == ["read"]

    def test_get_managed_objects_call(self, exporter):
        invocation = FakeInvocation()
        exporter._handle_om_method_call(None, ":1.42", ROOT, "org.freedesktop.DBus.ObjectManager",
                                        "GetManagedObjects", None, invocation)
        assert invocation.value.get_type_string() == "(a{oa{sa{sv}}})"
        (objects,) = invocation.value.unpack()
        assert objects[TEST_CHAR][GATT_CHAR_IFACE]["UUID"] == TEST_CHAR_UUID


class TestMethodCalls:
    def test_read_value(self, exporter):
        invocation = call(exporter, TEST_CHAR, GATT_CHAR_IFACE, "ReadValue", GLib.Variant("(a{sv})", ({},)))
        assert invocation.error is None
        assert invocation.value.get_type_string() == "(ay)"
        assert bytes(invocation.value.unpack()[0]) == (1000).to_bytes(4, "little")

    def test_read_value_with_offset(self, exporter):
        options = {"offset": GLib.Variant("q", 1)}
        invocation = call(exporter, MFGR_NAME, GATT_CHAR_IFACE, "ReadValue", GLib.Variant("(a{sv})", (options,)))
        assert bytes(invocation.value.unpack()[0]) == b"ello"

    def test_read_descriptor(self, exporter):
        invocation = call(exporter, USER_DESC, GATT_DESC_IFACE, "ReadValue", GLib.Variant("(a{sv})", ({},)))
        assert bytes(invocation.value.unpack()[0]) == b"Test characteristic"

    def test_write_value(self, exporter, accessors):
        params = GLib.Variant("(aya{sv})", (b"\x01\x02\x03\x04", {}))
        invocation = call(exporter, TEST_CHAR, GATT_CHAR_IFACE, "WriteValue", params)
        assert invocation.error is None
        assert invocation.value is None
        assert accessors.writes == [(b"\x01\x02\x03\x04", 4)]

    def test_write_failure_is_reported(self, exporter, accessors):
        accessors.write_status = 1
        params = GLib.Variant("(aya{sv})", (b"\x00", {}))
        invocation = call(exporter, TEST_CHAR, GATT_CHAR_IFACE, "WriteValue", params)
        assert invocation.error[0] == "org.bluez.Error.Failed"

    def test_unsupported_operation(self, exporter):
        params = GLib.Variant("(aya{sv})", (b"\x00", {}))
        invocation = call(exporter, MFGR_NAME, GATT_CHAR_IFACE, "WriteValue", params)
        assert invocation.error[0] == "org.bluez.Error.NotSupported"

        invocation = call(exporter, MFGR_NAME, GATT_CHAR_IFACE, "StartNotify")
        assert invocation.error[0] == "org.bluez.Error.NotSupported"

        invocation = call(exporter, MFGR_NAME, GATT_CHAR_IFACE, "StopNotify")
        assert invocation.error[0] == "org.bluez.Error.NotSupported"

        invocation = call(exporter, USER_DESC, GATT_DESC_IFACE, "WriteValue", params)
        assert invocation.error[0] == "org.bluez.Error.NotSupported"

    def test_read_accessor_exception_is_reported(self, bus, tree, notifier):
        exporter = GattObjectExporter(bus, tree, CallbackDispatcher(tree, notifier))
        node = tree[TEST_CHAR]
        failing = MagicMock(side_effect=RuntimeError("boom"))
        object.__setattr__(node, "accessor", node.accessor._replace(read=failing))
        invocation = call(exporter, TEST_CHAR, GATT_CHAR_IFACE, "ReadValue", GLib.Variant("(a{sv})", ({},)))
        assert invocation.error[0] == "org.bluez.Error.Failed"
        assert "boom" in invocation.error[1]

    def test_start_notify_updates_notifying_property(self, exporter, notifier):
        assert call(exporter, TEST_CHAR, GATT_CHAR_IFACE, "StartNotify").error is None
        assert notifier.is_notifying(TEST_CHAR)
        invocation = call(exporter, TEST_CHAR, DBUS_PROPS_IFACE, "Get",
                          GLib.Variant("(ss)", (GATT_CHAR_IFACE, "Notifying")))
        assert invocation.value.unpack() == (True,)

        assert call(exporter, TEST_CHAR, GATT_CHAR_IFACE, "StopNotify").error is None
        assert not notifier.is_notifying(TEST_CHAR)

    def test_properties_get_all(self, exporter):
        invocation = call(exporter, SERVICE, DBUS_PROPS_IFACE, "GetAll", GLib.Variant("(s)", (GATT_SERVICE_IFACE,)))
        (props,) = invocation.value.unpack()
        assert props["UUID"] == "0000180a-0000-1000-8000-00805f9b34fb"

    def test_properties_unknown(self, exporter):
        invocation = call(exporter, SERVICE, DBUS_PROPS_IFACE, "Get", GLib.Variant("(ss)", (GATT_SERVICE_IFACE, "Nope")))
        assert invocation.error[0] == "org.freedesktop.DBus.Error.InvalidArgs"

    def test_properties_set_not_permitted(self, exporter):
        params = GLib.Variant("(ssv)", (GATT_CHAR_IFACE, "UUID", GLib.Variant("s", "x")))
        invocation = call(exporter, TEST_CHAR, DBUS_PROPS_IFACE, "Set", params)
        assert invocation.error[0] == "org.bluez.Error.NotPermitted"

    def test_unknown_object_and_interface(self, exporter):
        assert call(exporter, f"{ROOT}/nope", GATT_CHAR_IFACE, "ReadValue").error[0] == \
            "org.freedesktop.DBus.Error.UnknownObject"
        assert call(exporter, TEST_CHAR, "org.example.Nope", "Ping").error[0] == \
            "org.freedesktop.DBus.Error.UnknownInterface"
        assert call(exporter, TEST_CHAR, GATT_CHAR_IFACE, "Confirm").error[0] == \
            "org.freedesktop.DBus.Error.UnknownMethod"


def test_emit_value_changed(exporter, bus):
    exporter.emit_value_changed(TEST_CHAR, b"xo-xo-xo_0")
    destination, path, iface, signal_name, params = bus.emit_signal.call_args.args
    assert destination is None
    assert path == TEST_CHAR
    assert iface == DBUS_PROPS_IFACE
    assert signal_name == "PropertiesChanged"
    changed_iface, changed, invalidated = params.unpack()
    assert changed_iface == GATT_CHAR_IFACE
    assert bytes(changed["Value"]) == b"xo-xo-xo_0"
    assert invalidated == []


def test_notifications_flow_through_exporter(exporter, bus, notifier, scheduler):
    notifier.emitter = exporter.emit_value_changed
    call(exporter, TEST_CHAR, GATT_CHAR_IFACE, "StartNotify")
    notifier.set_value(TEST_CHAR, "xo-xo-xo_0")
    notifier.set_value(TEST_CHAR, "xo-xo-xo_1")
    scheduler.run_pending()
    values = [bytes(c.args[4].unpack()[1]["Value"]) for c in bus.emit_signal.call_args_list]
    assert values == [b"xo-xo-xo_0", b"xo-xo-xo_1"]
