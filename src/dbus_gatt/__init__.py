"""
BLE GATT peripheral over BlueZ D-Bus.

This package lets an application declare a tree of GATT services,
characteristics and descriptors and publishes it to BlueZ, answering
reads and writes with application callbacks and pushing value changes
to subscribed centrals.
"""

__version__ = "0.1.0"
