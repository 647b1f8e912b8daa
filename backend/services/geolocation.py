import math
from dataclasses import dataclass, field
from typing import Protocol

from backend.config import DEFAULT_RADIUS_METERS, GPS_MAX_ACCURACY_METERS, GPS_MIN_ACCURACY_METERS

EARTH_RADIUS_METERS = 6_371_000.0
EMULATOR_MARKERS = ("sdk", "emulator", "simulator")


@dataclass(frozen=True)
class LocationReading:
    latitude: float
    longitude: float
    accuracy: float
    timestamp: float | None = None


@dataclass(frozen=True)
class FakeGpsCheck:
    is_fake: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class LocationCheck:
    within_radius: bool
    distance_meters: float
    is_fake_gps: bool
    radius_meters: float
    reasons: list[str] = field(default_factory=list)
    fake_reasons: list[str] = field(default_factory=list)


class LocationSource(Protocol):
    async def acquire(self) -> LocationReading: ...

    def close(self) -> None: ...


class ReportedLocationSource:
    """A reading the client already took on its own device."""

    def __init__(self, reading: LocationReading):
        self._reading: LocationReading | None = reading

    async def acquire(self) -> LocationReading:
        if self._reading is None:
            raise RuntimeError("Location source is closed.")
        return self._reading

    def close(self) -> None:
        self._reading = None


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters (haversine)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def is_within_radius(distance_meters: float, radius_meters: float) -> bool:
    return distance_meters <= radius_meters


def detect_fake_gps(user_agent: str | None, accuracy: float | None) -> FakeGpsCheck:
    reasons: list[str] = []

    ua = (user_agent or "").lower()
    if any(marker in ua for marker in EMULATOR_MARKERS):
        reasons.append("Emulator detected")

    if accuracy is not None:
        if accuracy < GPS_MIN_ACCURACY_METERS:
            reasons.append("GPS accuracy is suspiciously precise")
        if accuracy == 0 or accuracy > GPS_MAX_ACCURACY_METERS:
            reasons.append("GPS accuracy is invalid")

    return FakeGpsCheck(is_fake=bool(reasons), reasons=reasons)


def lesson_radius(lesson: dict) -> float:
    return float(lesson.get("radius_meters") or DEFAULT_RADIUS_METERS)


def evaluate_location(reading: LocationReading, lesson: dict, user_agent: str | None) -> LocationCheck:
    radius = lesson_radius(lesson)
    meters = distance(reading.latitude, reading.longitude, float(lesson["latitude"]), float(lesson["longitude"]))
    within = is_within_radius(meters, radius)
    fake = detect_fake_gps(user_agent, reading.accuracy)

    reasons: list[str] = []
    if not within:
        reasons.append(f"{round(meters)}m from lesson (allowed: {round(radius)}m)")
    reasons.extend(fake.reasons)

    return LocationCheck(
        within_radius=within,
        distance_meters=meters,
        is_fake_gps=fake.is_fake,
        radius_meters=radius,
        reasons=reasons,
        fake_reasons=list(fake.reasons),
    )
