"""Domain-specific errors for somactl."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from somactl.core.model import Request


class SomactlError(Exception):
    """Base error for somactl."""


class AdapterError(SomactlError):
    """Raised by a native adapter backend when a BLE primitive fails."""


class BleError(SomactlError):
    """Base error for failed Bluetooth Low Energy requests.

    Carries the request that failed, so callers can report which operation
    went wrong.
    """

    def __init__(self, message: str, request: Request | None = None) -> None:
        super().__init__(message)
        self.request = request


class BleAdapterUnavailableError(BleError):
    """Raised when the adapter is disabled or the platform is unsupported."""


class BleTimeoutError(BleError):
    """Raised when a request gets no response in time."""


class BleDisconnectedError(BleError):
    """Raised when the peripheral disconnects while a request is pending."""


class BleOperationError(BleError):
    """Raised when the adapter reports a failure for a request."""


class DefinitionError(SomactlError):
    """Base error for requests the peripheral definition cannot satisfy."""


class UnknownServiceError(DefinitionError):
    """Raised for a service key that is not defined for the peripheral."""


class UnknownCharacteristicError(DefinitionError):
    """Raised for a characteristic key that is not defined for the service."""


class UnsupportedOperationError(DefinitionError):
    """Raised when a characteristic does not support read, write or notify."""


class ServiceNotFoundError(DefinitionError):
    """Raised when the peripheral does not expose a defined service."""


class CharacteristicNotFoundError(DefinitionError):
    """Raised when the peripheral does not expose a defined characteristic."""


class DecodeError(SomactlError, ValueError):
    """Raised when a buffer cannot be decoded."""


class EncodeError(SomactlError, ValueError):
    """Raised when a value cannot be encoded into a buffer."""


class CatalogueError(SomactlError):
    """Raised when the definitions catalogue cannot be loaded."""


class SettingsError(SomactlError):
    """Raised when the settings file is unreadable or invalid."""


class TriggerCommandError(SomactlError):
    """Raised when a shade rejects a trigger command."""


class DeviceSelectionError(SomactlError):
    """Raised when no target device is given or configured."""


class DeviceNotFoundError(SomactlError):
    """Raised when the target device is not seen before the timeout."""
