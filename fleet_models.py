"""Fleet records: buses and the devices they carry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional

from device_status import (
    CONSOLE_COMPONENTS,
    VALIDATOR_COMPONENTS,
    ComponentStatus,
    Status,
    console_status,
    parse_component_status,
    parse_status,
    validator_status,
)


class DeviceKind(str, Enum):
    CONSOLE = "console"
    VALIDATOR = "validator"
    CAMERA = "camera"


def _clean_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _require_id(data: Mapping[str, Any]) -> str:
    identifier = _clean_id(data.get("id"))
    if identifier is None:
        raise ValueError("id required")
    return identifier


def _reading(data: Mapping[str, Any], name: str) -> ComponentStatus:
    value = data.get(name)
    if value is None:
        return ComponentStatus.OK
    return parse_component_status(value, name)


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Device(ABC):
    """A device contributing to the status of the bus that owns it."""

    id: str
    bus_id: Optional[str]

    kind: ClassVar[DeviceKind]

    @abstractmethod
    def status_contribution(self) -> Status:
        """Status this device feeds into its bus rollup."""

    @abstractmethod
    def to_record(self) -> Dict[str, Any]:
        """Stored representation (never includes a derived status)."""

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_record()
        data["status"] = self.status_contribution().value
        return data


@dataclass
class Console(Device):
    modem_status: ComponentStatus = ComponentStatus.OK
    gps_status: ComponentStatus = ComponentStatus.OK
    emv_status: ComponentStatus = ComponentStatus.OK
    rfid_status: ComponentStatus = ComponentStatus.OK
    printer_status: ComponentStatus = ComponentStatus.OK
    qr_status: ComponentStatus = ComponentStatus.OK

    kind: ClassVar[DeviceKind] = DeviceKind.CONSOLE
    components: ClassVar[tuple] = CONSOLE_COMPONENTS

    @property
    def status(self) -> Status:
        return console_status(
            self.modem_status,
            self.gps_status,
            self.emv_status,
            self.rfid_status,
            self.printer_status,
            self.qr_status,
        )

    def status_contribution(self) -> Status:
        return self.status

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"id": self.id, "bus_id": self.bus_id}
        for name in CONSOLE_COMPONENTS:
            record[name] = getattr(self, name).value
        return record

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Console":
        readings = {name: _reading(data, name) for name in CONSOLE_COMPONENTS}
        return cls(id=_require_id(data), bus_id=_clean_id(data.get("bus_id")), **readings)


@dataclass
class Validator(Device):
    rfid_status: ComponentStatus = ComponentStatus.OK
    emv_status: ComponentStatus = ComponentStatus.OK

    kind: ClassVar[DeviceKind] = DeviceKind.VALIDATOR
    components: ClassVar[tuple] = VALIDATOR_COMPONENTS

    @property
    def status(self) -> Status:
        return validator_status(self.rfid_status, self.emv_status)

    def status_contribution(self) -> Status:
        return self.status

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bus_id": self.bus_id,
            "rfid_status": self.rfid_status.value,
            "emv_status": self.emv_status.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Validator":
        readings = {name: _reading(data, name) for name in VALIDATOR_COMPONENTS}
        return cls(id=_require_id(data), bus_id=_clean_id(data.get("bus_id")), **readings)


@dataclass
class Camera(Device):
    status: Status = Status.OK

    kind: ClassVar[DeviceKind] = DeviceKind.CAMERA

    def status_contribution(self) -> Status:
        return self.status

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "bus_id": self.bus_id, "status": self.status.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Camera":
        return cls(
            id=_require_id(data),
            bus_id=_clean_id(data.get("bus_id")),
            status=parse_status(data.get("status") or Status.OK),
        )


@dataclass
class Bus:
    id: str
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    updated_at: Optional[str] = None  # ISO 8601 UTC of the last position fix

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Bus":
        name = data.get("name")
        return cls(
            id=_require_id(data),
            name=str(name) if name not in (None, "") else None,
            latitude=_coerce_float(data.get("latitude")),
            longitude=_coerce_float(data.get("longitude")),
            updated_at=data.get("updated_at") or None,
        )


DEVICE_TYPES: Dict[DeviceKind, type] = {
    DeviceKind.CONSOLE: Console,
    DeviceKind.VALIDATOR: Validator,
    DeviceKind.CAMERA: Camera,
}


__all__ = [
    "Bus",
    "Camera",
    "Console",
    "DEVICE_TYPES",
    "Device",
    "DeviceKind",
    "Validator",
]
