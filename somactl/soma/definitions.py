"""Definitions of the SOMA vendor services."""

from __future__ import annotations

from somactl.core.definitions import DefinitionRegistry, ValueFormat, characteristic, service
from somactl.soma.frames import SomaFormat


def soma_uuid(short: str) -> str:
    """Expand a 16-bit SOMA identifier onto the SOMA base UUID."""
    return f"0000{short.upper()}-B87F-490C-92CB-11BA5EA5167C"


TIME_SERVICE = soma_uuid("1554")
MOTOR_SERVICE = soma_uuid("1861")
SHADE_SERVICE = soma_uuid("1890")

SOMA_DEFINITIONS = DefinitionRegistry(
    [
        service(
            TIME_SERVICE,
            "Time Service",
            characteristic(soma_uuid("1555"), "Current Time", ValueFormat.DATE),
        ),
        service(
            MOTOR_SERVICE,
            "Motor Service",
            characteristic(soma_uuid("1525"), "Motor Current State", SomaFormat.MOTOR_CURRENT_STATE),
            characteristic(soma_uuid("1526"), "Motor Target State", ValueFormat.UINT8),
            characteristic(soma_uuid("1527"), "Motor Trigger Request", SomaFormat.TRIGGER_REQUEST),
            characteristic(soma_uuid("1528"), "Motor Trigger Response", SomaFormat.TRIGGER_RESPONSE),
            characteristic(soma_uuid("1529"), "Motor Calibration", ValueFormat.HEX_UINT8),
            characteristic(soma_uuid("1530"), "Motor Control", ValueFormat.HEX_UINT8),
            characteristic(soma_uuid("1531"), "Motor Notify", ValueFormat.BOOL),
            characteristic(soma_uuid("1532"), "Motor Solar Panel Voltage", ValueFormat.UINT16),
            characteristic(soma_uuid("1533"), "Motor Touch Button Enabled", ValueFormat.BOOL),
            characteristic(soma_uuid("1534"), "Motor Speed", ValueFormat.UINT8),
            characteristic(soma_uuid("BA71"), "Motor Battery Level", ValueFormat.UINT16),
            characteristic(soma_uuid("BA72"), "Motor Under Voltage", ValueFormat.BOOL),
        ),
        service(
            SHADE_SERVICE,
            "Shade Service",
            characteristic(soma_uuid("1891"), "Shade Firmware Control", ValueFormat.HEX_UINT8),
            characteristic(soma_uuid("1892"), "Shade Name", ValueFormat.CSTRING),
            characteristic(soma_uuid("1893"), "Group Name", ValueFormat.CSTRING),
            characteristic(soma_uuid("1894"), "Shade State", SomaFormat.SHADE_STATE),
            characteristic(soma_uuid("1895"), "Shade Mac Address", ValueFormat.STRING),
            characteristic(soma_uuid("1896"), "Shade Config", SomaFormat.SHADE_CONFIG),
        ),
    ]
)
