"""Async client for the AVL feed that reports bus positions."""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx

_logger = logging.getLogger(__name__)

_ID_KEYS = ("bus_id", "id", "VehicleID")
_LAT_KEYS = ("latitude", "lat", "Latitude")
_LON_KEYS = ("longitude", "lon", "Longitude")
_TS_KEYS = ("updated_at", "ts", "Timestamp")

# Epoch values above this are milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


@dataclass
class BusPosition:
    bus_id: str
    latitude: float
    longitude: float
    updated_at: Optional[str] = None

    def as_fix(self):
        return (self.bus_id, self.latitude, self.longitude, self.updated_at)


def _first(entry: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, ""):
            return value
    return None


def _coerce_coordinate(value: Any, limit: float) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or abs(number) > limit:
        return None
    return number


def _isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        try:
            return _isoformat(datetime.fromtimestamp(ts, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.lower().endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return _isoformat(dt)
    return None


def parse_positions(payload: Any) -> List[BusPosition]:
    """Extract bus positions from an AVL payload, skipping malformed records."""
    if isinstance(payload, dict):
        records = payload.get("d")
        if records is None:
            records = payload.get("vehicles")
    else:
        records = payload
    if not isinstance(records, list):
        return []

    positions: List[BusPosition] = []
    for entry in records:
        if not isinstance(entry, dict):
            continue
        bus_id = _first(entry, _ID_KEYS)
        lat = _coerce_coordinate(_first(entry, _LAT_KEYS), 90.0)
        lon = _coerce_coordinate(_first(entry, _LON_KEYS), 180.0)
        if bus_id is None or lat is None or lon is None:
            continue
        positions.append(
            BusPosition(
                bus_id=str(bus_id).strip(),
                latitude=lat,
                longitude=lon,
                updated_at=_parse_timestamp(_first(entry, _TS_KEYS)),
            )
        )
    return positions


class AvlClient:
    """Minimal client to fetch the current bus positions from the AVL feed."""

    def __init__(
        self,
        positions_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._positions_url = positions_url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._logger = logger or _logger
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "AvlClient":
        """Build an ``AvlClient`` using environment configuration.

        * ``AVL_POSITIONS_URL`` - required, JSON endpoint listing bus positions.
        * ``AVL_API_KEY`` - optional token sent as ``Authorization: Token <key>``.
        """
        positions_url = (os.getenv("AVL_POSITIONS_URL") or "").strip()
        if not positions_url:
            raise RuntimeError("Missing required environment variables: AVL_POSITIONS_URL")
        api_key = (os.getenv("AVL_API_KEY") or "").strip()
        return cls(positions_url=positions_url, api_key=api_key or None)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_positions(self) -> List[BusPosition]:
        client = await self._ensure_client()
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Token {self._api_key}"
        response = await client.get(self._positions_url, headers=headers)
        response.raise_for_status()
        positions = parse_positions(response.json())
        self._logger.debug("AVL feed returned %d positions", len(positions))
        return positions


__all__ = ["AvlClient", "BusPosition", "parse_positions"]
