"""File-backed store for buses and their onboard devices."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from device_status import InvalidStatusError, Status, parse_component_status, parse_status
from fleet_models import DEVICE_TYPES, Bus, Device, DeviceKind
from fleet_status import bus_status, filter_by_status

_logger = logging.getLogger(__name__)

BUS_KIND = "bus"

_SECTIONS = {
    DeviceKind.CONSOLE: "consoles",
    DeviceKind.VALIDATOR: "validators",
    DeviceKind.CAMERA: "cameras",
}


class NotFoundError(KeyError):
    """No bus or device is stored under the requested identifier."""

    def __init__(self, kind: str, identifier: Any) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(identifier)

    def __str__(self) -> str:
        return f"{self.kind} {self.identifier!r} not found"


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _sort_key(identifier: str):
    # ASCII-digit fleet numbers sort numerically, everything else lexically after them.
    return (0, int(identifier), "") if identifier.isascii() and identifier.isdigit() else (1, 0, identifier)


class FleetStore:
    def __init__(self, path: Path, logger: Optional[logging.Logger] = None):
        self._path = path
        self._logger = logger or _logger
        self._lock = asyncio.Lock()
        self._buses: Dict[str, Bus] = {}
        self._devices: Dict[DeviceKind, Dict[str, Device]] = {kind: {} for kind in DeviceKind}
        self._load_sync()

    @property
    def path(self) -> Path:
        return self._path

    def _load_sync(self) -> None:
        self._buses.clear()
        for table in self._devices.values():
            table.clear()
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            self._logger.warning("fleet store %s unreadable: %s", self._path, exc)
            return
        if not isinstance(raw, dict):
            self._logger.warning("fleet store %s has no sections", self._path)
            return

        for entry in raw.get("buses") or []:
            if not isinstance(entry, dict):
                continue
            try:
                bus = Bus.from_dict(entry)
            except ValueError as exc:
                self._logger.warning("skipping bus record %r: %s", entry.get("id"), exc)
                continue
            self._buses[bus.id] = bus

        for kind, section in _SECTIONS.items():
            record_type = DEVICE_TYPES[kind]
            for entry in raw.get(section) or []:
                if not isinstance(entry, dict):
                    continue
                try:
                    device = record_type.from_dict(entry)
                except ValueError as exc:
                    self._logger.warning("skipping %s record %r: %s", kind.value, entry.get("id"), exc)
                    continue
                self._devices[kind][device.id] = device

    def _serialise_state(
        self,
        buses: Optional[Dict[str, Bus]] = None,
        devices: Optional[Mapping[DeviceKind, Dict[str, Device]]] = None,
    ) -> str:
        buses = self._buses if buses is None else buses
        devices = self._devices if devices is None else devices
        data: Dict[str, Any] = {
            "buses": [bus.to_record() for bus in buses.values()],
        }
        for kind, section in _SECTIONS.items():
            data[section] = [device.to_record() for device in devices[kind].values()]
        return json.dumps(data, indent=2, sort_keys=True)

    async def _persist(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(payload)
        tmp_path.replace(self._path)

    async def _replace_device(self, device: Device) -> None:
        """Persist *device* in place of the stored record, then swap it in memory.

        Must be called with the lock held.
        """
        table = dict(self._devices[device.kind])
        table[device.id] = device
        devices = {**self._devices, device.kind: table}
        await self._persist(self._serialise_state(devices=devices))
        self._devices[device.kind][device.id] = device

    def _lookup(self, kind: DeviceKind, identifier: str) -> Device:
        device = self._devices[kind].get(str(identifier))
        if device is None:
            raise NotFoundError(kind.value, identifier)
        return device

    def _bus_view(self, bus: Bus, devices: List[Device]) -> Dict[str, Any]:
        status = bus_status(devices, bus_id=bus.id, logger=self._logger)
        view = bus.to_record()
        for kind, section in _SECTIONS.items():
            view[section] = [device.to_dict() for device in devices if device.kind is kind]
        view["status"] = status.value
        return view

    def _devices_of(self, bus_id: str) -> List[Device]:
        owned: List[Device] = []
        for kind in _SECTIONS:
            for identifier in sorted(self._devices[kind], key=_sort_key):
                device = self._devices[kind][identifier]
                if device.bus_id == bus_id:
                    owned.append(device)
        return owned

    # ---------------------------
    # Buses
    # ---------------------------
    async def list_buses(self, status: Optional[Status] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            snapshot = [
                (self._buses[bus_id], self._devices_of(bus_id))
                for bus_id in sorted(self._buses, key=_sort_key)
            ]
        views = [self._bus_view(bus, devices) for bus, devices in snapshot]
        return filter_by_status(views, status, key=lambda view: Status(view["status"]))

    async def get_bus(self, bus_id: Any) -> Dict[str, Any]:
        async with self._lock:
            bus = self._buses.get(str(bus_id))
            if bus is None:
                raise NotFoundError(BUS_KIND, bus_id)
            devices = self._devices_of(bus.id)
        return self._bus_view(bus, devices)

    async def update_bus_position(
        self,
        bus_id: Any,
        latitude: float,
        longitude: float,
        updated_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        async with self._lock:
            bus = self._buses.get(str(bus_id))
            if bus is None:
                raise NotFoundError(BUS_KIND, bus_id)
            moved = dataclasses.replace(
                bus,
                latitude=float(latitude),
                longitude=float(longitude),
                updated_at=updated_at or _now_iso(),
            )
            buses = {**self._buses, moved.id: moved}
            await self._persist(self._serialise_state(buses=buses))
            self._buses[moved.id] = moved
        return moved.to_record()

    async def update_bus_positions(
        self,
        fixes: Iterable[Tuple[str, float, float, Optional[str]]],
    ) -> Tuple[int, List[str]]:
        """Apply a batch of ``(bus_id, latitude, longitude, updated_at)`` fixes.

        Fixes for unknown buses are skipped. Returns the number applied and the
        skipped identifiers. The store file is written once per batch.
        """
        skipped: List[str] = []
        async with self._lock:
            buses = dict(self._buses)
            for bus_id, latitude, longitude, updated_at in fixes:
                bus = buses.get(str(bus_id))
                if bus is None:
                    skipped.append(str(bus_id))
                    continue
                buses[bus.id] = dataclasses.replace(
                    bus,
                    latitude=float(latitude),
                    longitude=float(longitude),
                    updated_at=updated_at or _now_iso(),
                )
            applied = [bus_id for bus_id, bus in buses.items() if bus is not self._buses[bus_id]]
            if applied:
                await self._persist(self._serialise_state(buses=buses))
                self._buses = buses
        return len(applied), skipped

    # ---------------------------
    # Devices
    # ---------------------------
    async def _list_devices(self, kind: DeviceKind, status: Optional[Status]) -> List[Dict[str, Any]]:
        async with self._lock:
            table = self._devices[kind]
            devices = [table[identifier] for identifier in sorted(table, key=_sort_key)]
        matching = filter_by_status(devices, status, key=lambda device: device.status_contribution())
        return [device.to_dict() for device in matching]

    async def _get_device(self, kind: DeviceKind, identifier: Any) -> Dict[str, Any]:
        async with self._lock:
            device = self._lookup(kind, identifier)
        return device.to_dict()

    async def list_consoles(self, status: Optional[Status] = None) -> List[Dict[str, Any]]:
        return await self._list_devices(DeviceKind.CONSOLE, status)

    async def get_console(self, console_id: Any) -> Dict[str, Any]:
        return await self._get_device(DeviceKind.CONSOLE, console_id)

    async def list_validators(self, status: Optional[Status] = None) -> List[Dict[str, Any]]:
        return await self._list_devices(DeviceKind.VALIDATOR, status)

    async def get_validator(self, validator_id: Any) -> Dict[str, Any]:
        return await self._get_device(DeviceKind.VALIDATOR, validator_id)

    async def list_cameras(self, status: Optional[Status] = None) -> List[Dict[str, Any]]:
        return await self._list_devices(DeviceKind.CAMERA, status)

    async def get_camera(self, camera_id: Any) -> Dict[str, Any]:
        return await self._get_device(DeviceKind.CAMERA, camera_id)

    async def update_camera_status(self, camera_id: Any, status: Any) -> Dict[str, Any]:
        new_status = parse_status(status)
        async with self._lock:
            camera = self._lookup(DeviceKind.CAMERA, camera_id)
            if camera.status is not new_status:
                await self._replace_device(dataclasses.replace(camera, status=new_status))
                camera = self._devices[DeviceKind.CAMERA][camera.id]
        return camera.to_dict()

    async def _set_derived_status(self, kind: DeviceKind, identifier: Any, status: Any) -> Dict[str, Any]:
        requested = parse_status(status)
        async with self._lock:
            device = self._lookup(kind, identifier)
        # Console and validator status is always recomputed from the component
        # readings, so the requested value has no lasting effect.
        self._logger.debug(
            "%s %s status is derived; ignoring requested %s (current %s)",
            kind.value,
            device.id,
            requested.value,
            device.status_contribution().value,
        )
        return device.to_dict()

    async def update_console_status(self, console_id: Any, status: Any) -> Dict[str, Any]:
        return await self._set_derived_status(DeviceKind.CONSOLE, console_id, status)

    async def update_validator_status(self, validator_id: Any, status: Any) -> Dict[str, Any]:
        return await self._set_derived_status(DeviceKind.VALIDATOR, validator_id, status)

    async def _update_components(
        self,
        kind: DeviceKind,
        identifier: Any,
        payload: Mapping[str, Any],
    ) -> Dict[str, Any]:
        allowed = DEVICE_TYPES[kind].components
        changes = {}
        for key, value in (payload or {}).items():
            if key not in allowed:
                raise InvalidStatusError(key, allowed, field="component")
            changes[key] = parse_component_status(value, key)
        async with self._lock:
            device = self._lookup(kind, identifier)
            if any(getattr(device, key) is not value for key, value in changes.items()):
                await self._replace_device(dataclasses.replace(device, **changes))
                device = self._devices[kind][device.id]
        return device.to_dict()

    async def update_console_components(self, console_id: Any, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._update_components(DeviceKind.CONSOLE, console_id, payload)

    async def update_validator_components(self, validator_id: Any, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._update_components(DeviceKind.VALIDATOR, validator_id, payload)

    async def counts(self) -> Dict[str, int]:
        async with self._lock:
            counts = {"buses": len(self._buses)}
            for kind, section in _SECTIONS.items():
                counts[section] = len(self._devices[kind])
        return counts


__all__ = ["BUS_KIND", "FleetStore", "NotFoundError"]
