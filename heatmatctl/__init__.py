"""Bluetooth LE heating mat control."""

__version__ = "0.1.0"
