"""Bluetooth Low Energy control for SOMA smart shades."""

__version__ = "0.1.0"
