"""SOMA Smart Shades and Tilt driver."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, cast

from somactl.core.client import BleClient
from somactl.core.errors import DecodeError, TriggerCommandError
from somactl.core.model import ClientSettings, DeviceFound, Response
from somactl.core.peripheral import PeripheralDelegate
from somactl.soma.definitions import SOMA_DEFINITIONS
from somactl.soma.frames import (
    MANUFACTURER_CODE,
    ConfigTag,
    MotorCommand,
    ShadeConfig,
    Trigger,
    TriggerCommand,
    TriggerResponse,
    encode_calibration,
    encode_config_query,
    encode_config_set,
    encode_motor_command,
    encode_position,
    encode_trigger_request,
    parse_manufacturer_data,
)
from somactl.transports.base import Adapter, NativePeripheral

LOGGER = logging.getLogger(__name__)

MOTOR = "motor_service"
SHADE = "shade_service"

SOMA_SETTINGS = ClientSettings(allow_duplicates=True, scan_duration=0)


def _parsed(response: Response) -> Any:
    if response.decode_error is not None:
        raise response.decode_error
    if response.parsed_value is None:
        raise DecodeError(f"{response.request}: empty response")
    return response.parsed_value


class SomaPeripheral(PeripheralDelegate):
    """Delegate for one SOMA device."""

    def __init__(self, client: BleClient, peripheral: NativePeripheral) -> None:
        super().__init__(client, peripheral, SOMA_DEFINITIONS)
        self.venetian_mode = False

    # Motor.

    async def set_position(self, position: int) -> Response:
        """Move to `position`: % closed, or -100..100 for tilt devices."""
        buffer = encode_position(position, self.venetian_mode)
        return await self.write(MOTOR, "motor_target_state", buffer)

    async def motor_control(self, command: MotorCommand) -> Response:
        return await self.write(MOTOR, "motor_control", encode_motor_command(command))

    async def stop(self) -> Response:
        return await self.motor_control(MotorCommand.STOP)

    async def move_up(self) -> Response:
        return await self.motor_control(MotorCommand.UP)

    async def move_down(self) -> Response:
        return await self.motor_control(MotorCommand.DOWN)

    async def set_motor_speed(self, speed: int) -> Response:
        return await self.write_value(MOTOR, "motor_speed", speed)

    async def identify(self) -> Response:
        """Make the motor jog briefly."""
        return await self.write(MOTOR, "motor_notify", b"\x01")

    async def set_calibration(self, enabled: bool) -> Response:
        return await self.write(MOTOR, "motor_calibration", encode_calibration(enabled))

    async def read_position(self) -> int:
        response = await self.read(MOTOR, "motor_current_state")
        return _parsed(response).position

    # Triggers.

    async def _trigger_command(
        self,
        command: TriggerCommand,
        trigger_id: int = 0,
        trigger: Trigger | None = None,
    ) -> TriggerResponse:
        buffer = encode_trigger_request(command, trigger_id, trigger)
        response = await self.exchange(MOTOR, "motor_trigger_request", "motor_trigger_response", buffer)
        result = _parsed(response)
        if not isinstance(result, TriggerResponse):
            raise TriggerCommandError(f"{command.name.lower()}: invalid trigger response")
        if not result.ok:
            raise TriggerCommandError(f"{command.name.lower()} trigger {trigger_id}: {result.status}")
        return result

    async def read_trigger_ids(self) -> tuple[int, ...]:
        response = await self.read(MOTOR, "motor_current_state")
        return _parsed(response).triggers

    async def read_trigger(self, trigger_id: int) -> Trigger:
        result = await self._trigger_command(TriggerCommand.READ, trigger_id)
        if result.trigger is None:
            raise TriggerCommandError(f"read trigger {trigger_id}: no trigger record")
        return result.trigger

    async def read_triggers(self) -> list[Trigger]:
        return [await self.read_trigger(trigger_id) for trigger_id in await self.read_trigger_ids()]

    async def add_trigger(self, trigger: Trigger) -> TriggerResponse:
        return await self._trigger_command(TriggerCommand.ADD, 0, trigger)

    async def edit_trigger(self, trigger: Trigger) -> TriggerResponse:
        if trigger.id is None:
            raise TriggerCommandError("edit trigger: trigger has no id")
        return await self._trigger_command(TriggerCommand.EDIT, trigger.id, trigger)

    async def remove_trigger(self, trigger_id: int) -> TriggerResponse:
        return await self._trigger_command(TriggerCommand.REMOVE, trigger_id)

    async def clear_triggers(self) -> TriggerResponse:
        return await self._trigger_command(TriggerCommand.CLEAR_ALL)

    async def set_trigger_enabled(self, trigger_id: int, enabled: bool) -> Trigger:
        trigger = await self.read_trigger(trigger_id)
        if trigger.enabled != enabled:
            trigger = replace(trigger, enabled=enabled)
            await self.edit_trigger(trigger)
        return trigger

    # Shade configuration.

    async def read_config(self, *tags: ConfigTag) -> ShadeConfig:
        response = await self.exchange(SHADE, "shade_config", "shade_config", encode_config_query(tags))
        return _parsed(response)

    async def write_config(self, tag: ConfigTag, value: Any) -> Response:
        return await self.write(SHADE, "shade_config", encode_config_set(tag, value))

    async def set_venetian_mode(self, enabled: bool) -> Response:
        response = await self.write_config(ConfigTag.VENETIAN_MODE, enabled)
        self.venetian_mode = enabled
        return response


class SomaClient(BleClient):
    """BLE client that recognises SOMA devices.

    Scans continuously and reports duplicates by default, so the position
    and battery level in the advertisements stay current. Emits
    `shade_found(DeviceFound)` with `data` set to the decoded
    `ShadeAdvertisement`.
    """

    peripheral_delegate_class = SomaPeripheral

    def __init__(self, adapter: Adapter, settings: ClientSettings | None = None) -> None:
        super().__init__(adapter, settings or SOMA_SETTINGS)
        self.on("device_found", self._on_device_found)

    def _on_device_found(self, device: DeviceFound) -> None:
        if device.manufacturer is None or device.manufacturer.code != MANUFACTURER_CODE:
            return
        try:
            data = parse_manufacturer_data(device.manufacturer_data)
        except DecodeError as exc:
            LOGGER.debug("%s: invalid manufacturer data: %s", device.id, exc)
            return
        delegate = self._delegates.get(device.id)
        if isinstance(delegate, SomaPeripheral):
            delegate.venetian_mode = data.supports_tilt
        self.emit("shade_found", replace(device, data=data))

    def peripheral_delegate(self, peripheral: NativePeripheral, venetian_mode: bool = False) -> SomaPeripheral:
        delegate = cast(SomaPeripheral, super().peripheral_delegate(peripheral))
        delegate.venetian_mode = delegate.venetian_mode or venetian_mode
        return delegate
