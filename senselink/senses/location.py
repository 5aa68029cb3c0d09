"""
SenseLink Location Sense -- movement filtering and geofencing.

Only significant movement is recorded. A fix closer than the movement
threshold to the last recorded fix refreshes the timestamp of
``current.json`` and nothing else; a significant fix rewrites ``current.json``,
appends to the day's history and re-evaluates every geofence.

Config::

    senses:
      location:
        movement_threshold_m: 50
        geocode_url: https://nominatim.openstreetmap.org/reverse   # optional
        geocode_timeout_s: 5

Files (under the agent's sense directory)::

    current.json          latest fix, nearest geofence name, place name
    geofences.json        {"home": {"name": "Home", "latitude": ..., "longitude": ..., "radius_m": 100}}
    geofence-state.json   {"home": {"inside": true, "since": "2026-10-19T08:00:00+00:00"}}
    history/2026-10-19.json
"""

import asyncio
import logging
import math
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from senselink.errors import Lookup, ValidationError
from senselink.storage import parse_timestamp, read_json, today_str, utc_now_iso, write_json

logger = logging.getLogger("SenseLink.Senses.Location")

EARTH_RADIUS_M = 6371000.0
DEFAULT_THRESHOLD_M = 50.0
DEFAULT_GEOCODE_TIMEOUT_S = 5.0

POINT_FIELDS = ("accuracy", "altitude", "speed", "heading")


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass
class Geofence:
    id: str
    name: str
    latitude: float
    longitude: float
    radius_m: float

    @classmethod
    def from_dict(cls, geofence_id: str, data: dict) -> "Geofence":
        radius = data.get("radius_m", data.get("radiusMeters"))
        return cls(
            id=geofence_id,
            name=data.get("name") or geofence_id,
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            radius_m=float(radius),
        )

    def contains(self, latitude: float, longitude: float) -> bool:
        return haversine_m(latitude, longitude, self.latitude, self.longitude) <= self.radius_m


@dataclass
class GeofenceEvent:
    """A containment transition for one geofence."""

    event: str  # "enter" or "exit"
    geofence_id: str
    name: str
    latitude: float
    longitude: float
    timestamp: str
    since: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def describe(self) -> str:
        """Natural-language form handed to the agent."""
        if self.event == "enter":
            return f"[Location] Arrived at {self.name} ({self.timestamp})."
        if self.since:
            return f"[Location] Left {self.name} ({self.timestamp}), inside since {self.since}."
        return f"[Location] Left {self.name} ({self.timestamp})."


@dataclass
class LocationResult:
    significant: bool
    distance_m: Optional[float] = None
    place: Optional[str] = None
    events: List[GeofenceEvent] = field(default_factory=list)


def parse_point(content: Dict[str, Any]) -> Dict[str, Any]:
    """Build a LocationPoint dict from message content. Raises ValidationError."""
    lat = content.get("latitude", content.get("lat"))
    lon = content.get("longitude", content.get("lon", content.get("lng")))
    if lat is None or lon is None:
        raise ValidationError("INVALID_LOCATION", "latitude and longitude are required")
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        raise ValidationError("INVALID_LOCATION", "latitude and longitude must be numbers")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise ValidationError("INVALID_LOCATION", f"coordinates out of range: {lat}, {lon}")

    point = {"latitude": lat, "longitude": lon}
    for key in POINT_FIELDS:
        if content.get(key) is not None:
            point[key] = content[key]
    point["timestamp"] = parse_timestamp(content.get("timestamp")).isoformat()
    return point


class LocationSense:
    """Per-agent location tracker.

    The whole read-modify-write of ``current.json`` and geofence state runs
    under one ``asyncio.Lock`` so interleaved fixes for the same agent cannot
    lose a transition.
    """

    def __init__(self, base_dir: str, config: Optional[dict] = None):
        config = config or {}
        self.base_dir = base_dir
        self.threshold_m = float(config.get("movement_threshold_m", DEFAULT_THRESHOLD_M))
        self.geocode_url = config.get("geocode_url")
        self.geocode_timeout = float(config.get("geocode_timeout_s", DEFAULT_GEOCODE_TIMEOUT_S))
        self._lock = asyncio.Lock()

    @property
    def current_path(self) -> str:
        return os.path.join(self.base_dir, "current.json")

    @property
    def geofences_path(self) -> str:
        return os.path.join(self.base_dir, "geofences.json")

    @property
    def state_path(self) -> str:
        return os.path.join(self.base_dir, "geofence-state.json")

    def history_path(self, day: Optional[str] = None) -> str:
        return os.path.join(self.base_dir, "history", f"{day or today_str()}.json")

    # ------------------------------------------------------------------
    # Geofences
    # ------------------------------------------------------------------
    def load_geofences(self) -> List[Geofence]:
        raw = read_json(self.geofences_path, fallback={})
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring malformed {self.geofences_path}")
            return []
        fences = []
        for geofence_id, data in raw.items():
            try:
                fences.append(Geofence.from_dict(geofence_id, data))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping malformed geofence {geofence_id}: {exc}")
        return fences

    def save_geofences(self, fences: List[Geofence]):
        write_json(
            self.geofences_path,
            {f.id: {k: v for k, v in asdict(f).items() if k != "id"} for f in fences},
        )

    def evaluate_geofences(self, point: Dict[str, Any]) -> List[GeofenceEvent]:
        """Compare *point* against every geofence and persist any transitions."""
        fences = self.load_geofences()
        if not fences:
            return []
        state = read_json(self.state_path, fallback={})
        if not isinstance(state, dict):
            state = {}

        events = []
        for fence in fences:
            inside = fence.contains(point["latitude"], point["longitude"])
            previous = state.get(fence.id) or {}
            was_inside = bool(previous.get("inside", False))
            if inside and not was_inside:
                state[fence.id] = {"inside": True, "since": point["timestamp"]}
                events.append(GeofenceEvent(
                    "enter", fence.id, fence.name,
                    point["latitude"], point["longitude"], point["timestamp"],
                ))
                logger.info(f"Geofence ENTER: {fence.name}")
            elif was_inside and not inside:
                state[fence.id] = {"inside": False}
                events.append(GeofenceEvent(
                    "exit", fence.id, fence.name,
                    point["latitude"], point["longitude"], point["timestamp"],
                    since=previous.get("since"),
                ))
                logger.info(f"Geofence EXIT: {fence.name}")

        if events:
            write_json(self.state_path, state)
        return events

    def _containing_fence(self, point: Dict[str, Any]) -> Optional[str]:
        for fence in self.load_geofences():
            if fence.contains(point["latitude"], point["longitude"]):
                return fence.name
        return None

    # ------------------------------------------------------------------
    # Reverse geocoding
    # ------------------------------------------------------------------
    async def reverse_geocode(self, latitude: float, longitude: float) -> Lookup:
        """Resolve a place name. Never raises; failures come back as a Lookup."""
        if not self.geocode_url:
            return Lookup.not_found("geocoding disabled")
        params = {"lat": latitude, "lon": longitude, "format": "jsonv2"}
        headers = {"User-Agent": "senselink"}
        try:
            async with httpx.AsyncClient(timeout=self.geocode_timeout) as client:
                resp = await client.get(self.geocode_url, params=params, headers=headers)
            if resp.status_code == 404:
                return Lookup.not_found("no place at this position")
            resp.raise_for_status()
            name = resp.json().get("display_name")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            return Lookup.transient(str(exc))
        if not name:
            return Lookup.not_found("no display_name in response")
        return Lookup.found(name)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------
    async def handle(self, content: Dict[str, Any]) -> LocationResult:
        point = parse_point(content)
        async with self._lock:
            current = read_json(self.current_path, fallback=None)
            last = current.get("current") if isinstance(current, dict) else None

            distance = None
            if isinstance(last, dict) and "latitude" in last and "longitude" in last:
                distance = haversine_m(
                    last["latitude"], last["longitude"], point["latitude"], point["longitude"]
                )
                if distance < self.threshold_m:
                    logger.debug(
                        f"Movement {distance:.0f}m < {self.threshold_m:.0f}m threshold -- refreshing only"
                    )
                    current["current"] = {**last, "timestamp": point["timestamp"]}
                    current["updated_at"] = utc_now_iso()
                    write_json(self.current_path, current)
                    return LocationResult(significant=False, distance_m=distance)
                logger.info(f"Significant movement: {distance:.0f}m")
            else:
                logger.info(
                    "First location fix: %.4f, %.4f", point["latitude"], point["longitude"]
                )

            place = None
            lookup = await self.reverse_geocode(point["latitude"], point["longitude"])
            if lookup.ok:
                place = lookup.value
            elif self.geocode_url:
                logger.debug(f"Reverse geocode skipped ({lookup.status.value}): {lookup.detail}")

            record = {"current": point, "updated_at": utc_now_iso()}
            fence_name = self._containing_fence(point)
            if fence_name:
                record["geofence"] = fence_name
            if place:
                record["place"] = place
            write_json(self.current_path, record)

            history_path = self.history_path()
            history = read_json(history_path, fallback=[])
            if not isinstance(history, list):
                history = []
            history.append(point)
            write_json(history_path, history)

            events = self.evaluate_geofences(point)
            return LocationResult(significant=True, distance_m=distance, place=place, events=events)
