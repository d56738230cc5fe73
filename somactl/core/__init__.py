"""Core BLE engine: client, delegates, definitions and codecs."""
