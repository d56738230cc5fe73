"""JSON schemas for the catalogue and settings files."""
