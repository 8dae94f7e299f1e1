"""
Bus status rollup

A bus has no health reading of its own. Its status is recomputed from the
devices it carries every time it is read:

1. any console, validator or camera KO          -> KO
2. any console or validator WARNING             -> WARNING
3. every console, validator and camera OK       -> OK
4. anything else                                -> WARNING

Camera WARNING is not part of rule 2; such a bus falls through to rule 4.
A bus carrying no devices at all satisfies rule 3 and is OK.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable, List, Optional, Sequence, TypeVar

from device_status import Status
from fleet_models import Device, DeviceKind

_logger = logging.getLogger(__name__)

# Device kinds whose WARNING escalates the bus on its own (rule 2).
WARNING_KINDS = frozenset({DeviceKind.CONSOLE, DeviceKind.VALIDATOR})

MARKER_COLORS = {
    Status.OK: "#4caf50",
    Status.WARNING: "#ff9800",
    Status.KO: "#f44336",
}
UNKNOWN_MARKER_COLOR = "#757575"

T = TypeVar("T")


def bus_status(
    devices: Iterable[Device],
    *,
    bus_id: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> Status:
    """Roll the statuses of a bus's devices up into the bus status."""
    log = logger or _logger
    contributions = [(device.kind, device.status_contribution()) for device in devices]

    if any(status is Status.KO for _, status in contributions):
        result, rule = Status.KO, "device_ko"
    elif any(kind in WARNING_KINDS and status is Status.WARNING for kind, status in contributions):
        result, rule = Status.WARNING, "device_warning"
    elif all(status is Status.OK for _, status in contributions):
        result, rule = Status.OK, "all_ok"
    else:
        result, rule = Status.WARNING, "fallback"

    if log.isEnabledFor(logging.DEBUG):
        counts = Counter(kind.value for kind, _ in contributions)
        log.debug(
            "bus %s status %s (%s)",
            bus_id,
            result.value,
            rule,
            extra={
                "bus_id": bus_id,
                "bus_status": result.value,
                "rule": rule,
                "consoles": counts.get(DeviceKind.CONSOLE.value, 0),
                "validators": counts.get(DeviceKind.VALIDATOR.value, 0),
                "cameras": counts.get(DeviceKind.CAMERA.value, 0),
            },
        )
    return result


def filter_by_status(items: Sequence[T], status: Optional[Status], key) -> List[T]:
    """Keep the items whose ``key(item)`` equals *status*; ``None`` keeps all."""
    if status is None:
        return list(items)
    return [item for item in items if key(item) is status]


def marker_color(status: Optional[str]) -> str:
    try:
        return MARKER_COLORS[Status(status)]
    except ValueError:
        return UNKNOWN_MARKER_COLOR


__all__ = [
    "MARKER_COLORS",
    "UNKNOWN_MARKER_COLOR",
    "WARNING_KINDS",
    "bus_status",
    "filter_by_status",
    "marker_color",
]
