"""
Device status rules

Consoles and validators do not store a status of their own: it is derived on
every read from the OK/KO readings of their physical components. Cameras
report a tri-state status directly.

Console rules (first match wins):
- modem, GPS, EMV reader, RFID reader or printer KO -> KO
- QR scanner KO                                   -> WARNING
- otherwise                                       -> OK

Validator rules:
- RFID and EMV both KO -> KO
- RFID and EMV both OK -> OK
- mixed                -> WARNING
"""

from __future__ import annotations

from enum import Enum
from typing import Any, FrozenSet, Iterable


class Status(str, Enum):
    """Tri-state health of a device or bus."""

    OK = "OK"
    WARNING = "WARNING"
    KO = "KO"


class ComponentStatus(str, Enum):
    """Two-valued reading from a single subsystem (GPS receiver, printer...)."""

    OK = "OK"
    KO = "KO"


CONSOLE_COMPONENTS = (
    "modem_status",
    "gps_status",
    "emv_status",
    "rfid_status",
    "printer_status",
    "qr_status",
)
# Any of these failing takes the whole console down.
CONSOLE_CRITICAL_COMPONENTS = CONSOLE_COMPONENTS[:5]

VALIDATOR_COMPONENTS = ("rfid_status", "emv_status")


class InvalidStatusError(ValueError):
    """A status value outside the enumeration accepted for the target."""

    def __init__(self, value: Any, allowed: Iterable[str], field: str = "status") -> None:
        self.value = value
        self.allowed: FrozenSet[str] = frozenset(allowed)
        self.field = field
        choices = ", ".join(sorted(self.allowed))
        super().__init__(f"invalid {field} {value!r}; expected one of {choices}")


def parse_status(value: Any, field: str = "status") -> Status:
    if isinstance(value, Status):
        return value
    if isinstance(value, str):
        try:
            return Status(value)
        except ValueError:
            pass
    raise InvalidStatusError(value, (s.value for s in Status), field)


def parse_component_status(value: Any, field: str = "status") -> ComponentStatus:
    if isinstance(value, ComponentStatus):
        return value
    if isinstance(value, str):
        try:
            return ComponentStatus(value)
        except ValueError:
            pass
    raise InvalidStatusError(value, (s.value for s in ComponentStatus), field)


def console_status(
    modem_status: ComponentStatus,
    gps_status: ComponentStatus,
    emv_status: ComponentStatus,
    rfid_status: ComponentStatus,
    printer_status: ComponentStatus,
    qr_status: ComponentStatus,
) -> Status:
    critical = (modem_status, gps_status, emv_status, rfid_status, printer_status)
    if any(reading is ComponentStatus.KO for reading in critical):
        return Status.KO
    if qr_status is ComponentStatus.KO:
        return Status.WARNING
    return Status.OK


def validator_status(rfid_status: ComponentStatus, emv_status: ComponentStatus) -> Status:
    if rfid_status is ComponentStatus.KO and emv_status is ComponentStatus.KO:
        return Status.KO
    if rfid_status is ComponentStatus.OK and emv_status is ComponentStatus.OK:
        return Status.OK
    return Status.WARNING


__all__ = [
    "CONSOLE_COMPONENTS",
    "CONSOLE_CRITICAL_COMPONENTS",
    "ComponentStatus",
    "InvalidStatusError",
    "Status",
    "VALIDATOR_COMPONENTS",
    "console_status",
    "parse_component_status",
    "parse_status",
    "validator_status",
]
