"""Bluetooth Low Energy advertising packets, ATT client and server, and GATT model."""

__version__ = "0.1.0"