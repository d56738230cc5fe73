"""Bundled Bluetooth assigned numbers catalogue."""
