"""SOMA Smart Shades and Tilt device layer."""
