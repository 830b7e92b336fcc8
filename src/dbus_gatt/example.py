"""
Example GATT peripheral.

Usage:
    sudo python3 -m dbus_gatt --interval 5 --verbose

Exposes a Device Information style service "device" with:
- mfgr_name: read, returns "hello"
- test_char: read/write/notify, reads 1000, logs writes, and is pushed
  "xo-xo-xo_<n>" every --interval seconds by a background thread
- test_read_only_value: read, fixed value 1234
"""

import argparse
import logging
import sys
import threading
from typing import List, Optional

from .exceptions import DBusGattError
from .model import (
    FLAG_NOTIFY,
    FLAG_READ,
    FLAG_WRITE,
    Characteristic,
    ReadOnlyValueCharacteristic,
    Service,
)
from .peripheral import Peripheral
from .properties import DeviceProperty

logger = logging.getLogger(__name__)

DEVICE_INFO_SERVICE_UUID = "0000180a-0000-1000-8000-00805f9b34fb"
MANUFACTURER_NAME_UUID = "00002a29-0000-1000-8000-00805f9b34fb"
TEST_CHAR_UUID = "00002a30-0000-1000-8000-00805f9b34fb"
TEST_READ_ONLY_UUID = "00002a31-0000-1000-8000-00805f9b34fb"

TEST_CHAR_VALUE_ON_READ = 1000
TEST_READ_ONLY_VALUE = 1234
TEST_CHAR_PATH = "device/test_char"


def read_manufacturer_name() -> str:
    return "hello"


def read_test_char() -> int:
    return TEST_CHAR_VALUE_ON_READ


def write_test_char(value: bytes, size: int) -> int:
    logger.info(f"write size {size}: {value!r}")
    return 0


def build_services() -> List[Service]:
    """The example service tree."""
    return [
        Service(
            "device",
            DEVICE_INFO_SERVICE_UUID,
            Characteristic(
                "mfgr_name",
                MANUFACTURER_NAME_UUID,
                FLAG_READ,
                read_manufacturer_name,
            ),
            Characteristic(
                "test_char",
                TEST_CHAR_UUID,
                [FLAG_READ, FLAG_WRITE, FLAG_NOTIFY],
                read_test_char,
                write_test_char,
            ),
            ReadOnlyValueCharacteristic(
                "test_read_only_value",
                TEST_READ_ONLY_UUID,
                FLAG_READ,
                TEST_READ_ONLY_VALUE,
            ),
        ),
    ]


class ExamplePeripheral:
    """Example application wiring a Peripheral to a value producer thread."""

    def __init__(
        self,
        app_path: str = "/dbus_gatt/example",
        bus_name: Optional[str] = None,
        adapter: str = "hci0",
        local_name: Optional[str] = "dbus_gatt",
        advertise: bool = True,
        interval: float = 5.0,
        verbose: bool = False,
    ):
        self.interval = interval
        self.peripheral = Peripheral(
            build_services(),
            app_path=app_path,
            bus_name=bus_name,
            adapter=adapter,
            local_name=local_name,
            advertise=advertise,
            verbose=verbose,
        )
        self.peripheral.add_device_property_callback(DeviceProperty.CONNECTED, self._on_connected)
        self._stop_event = threading.Event()
        self._notify_thread: Optional[threading.Thread] = None
        self._counter = 0

    @staticmethod
    def _on_connected(connected: bool) -> None:
        if connected:
            logger.info("device connected")
        else:
            logger.info("device disconnected")

    def push_next_value(self) -> bool:
        value = f"xo-xo-xo_{self._counter}"
        self._counter += 1
        return self.peripheral.set_value(TEST_CHAR_PATH, value)

    def _notify_loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.push_next_value()

    def run(self) -> int:
        """Run the peripheral. Returns exit code."""
        self._notify_thread = threading.Thread(target=self._notify_loop, daemon=True)
        self._notify_thread.start()
        try:
            self.peripheral.start()
        except DBusGattError as e:
            logger.error(f"FATAL ERROR: {e}")
            return 1
        finally:
            self._stop_event.set()
        return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(
        description="Example BLE GATT peripheral on BlueZ",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    sudo python3 -m dbus_gatt
    sudo python3 -m dbus_gatt --interval 1 --verbose

Verification commands (run in another terminal):
    busctl --system call <unique name> /dbus_gatt/example \\
        org.freedesktop.DBus.ObjectManager GetManagedObjects
""",
    )
    parser.add_argument(
        "--adapter",
        default="hci0",
        help="Bluetooth adapter name (default: hci0)",
    )
    parser.add_argument(
        "--name",
        default="dbus_gatt",
        help="Local name for advertisement (default: dbus_gatt)",
    )
    parser.add_argument(
        "--app-path",
        default="/dbus_gatt/example",
        help="Object path of the GATT application (default: /dbus_gatt/example)",
    )
    parser.add_argument(
        "--bus-name",
        default=None,
        help="Well-known bus name to request, e.g. dbus_gatt.example (needs a D-Bus policy)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=5.0,
        help="Seconds between test_char value pushes (default: 5)",
    )
    parser.add_argument(
        "--no-advertise",
        action="store_true",
        help="Do not register an LE advertisement",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        app = ExamplePeripheral(
            app_path=args.app_path,
            bus_name=args.bus_name,
            adapter=args.adapter,
            local_name=args.name,
            advertise=not args.no_advertise,
            interval=args.interval,
            verbose=args.verbose,
        )
    except DBusGattError as e:
        logger.error(f"FATAL ERROR: {e}")
        sys.exit(1)

    sys.exit(app.run())


if __name__ == "__main__":
    main()
