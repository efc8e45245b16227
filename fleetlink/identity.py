"""Driver attribution for telemetry and safety events.

Each strategy looks at one event against pre-fetched reference data and
either returns a ``Resolution`` or ``None``. ``resolve_event`` walks
``STRATEGIES`` in order and stops at the first hit; strategies never blend.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import IdentitySettings, config
from .errors import MalformedRecordError
from .normalizer import normalize_name, normalize_registration

logger = logging.getLogger(__name__)

WINDOW_30MIN_SECONDS = 30 * 60
WINDOW_1HOUR_SECONDS = 60 * 60


class AttributionMethod(str, Enum):
    DIRECT = "direct"
    NAME_MAPPING = "name_mapping"
    WINDOW_30MIN = "vehicle_window_30min"
    WINDOW_1HOUR = "vehicle_window_1hour"
    WINDOW_SAME_DAY = "vehicle_window_same_day"
    ACTIVE_TRIP = "active_trip"
    NAME_MATCH = "name_match"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Resolution:
    driver_id: Optional[int]
    method: AttributionMethod
    confidence: float
    evidence: dict = field(default_factory=dict)

    @property
    def resolved(self) -> bool:
        return self.driver_id is not None


def unresolved(reason: str) -> Resolution:
    return Resolution(None, AttributionMethod.UNKNOWN, 0.0, {"reason": reason})


class ResolutionContext:
    """Reference data and neighbouring events used by the strategies.

    ``events`` are safety-camera and distraction events, ``trips`` are GPS
    trip records; both are grouped by the vehicle they resolve to so lookups
    do not depend on how the registration was typed.
    """

    def __init__(self, drivers: Iterable, vehicles: Iterable, devices: Iterable = (),
                 name_mappings: Iterable = (), events: Iterable = (), trips: Iterable = ()):
        self.drivers = {d.id: d for d in drivers}
        self.drivers_by_name = defaultdict(list)
        for driver in self.drivers.values():
            self.drivers_by_name[normalize_name(driver.full_name)].append(driver)

        self.vehicles = {v.id: v for v in vehicles}
        self.vehicles_by_registration = {
            normalize_registration(v.registration): v for v in self.vehicles.values()
        }
        self.vehicles_by_device = {}
        for device in devices:
            vehicle = self.vehicles.get(device.vehicle_id)
            if vehicle is not None:
                self.vehicles_by_device[device.device_serial.strip().upper()] = vehicle

        self.name_mappings = {
            (m.source_system, m.name_key): m.driver_id for m in name_mappings
        }

        self.events_by_vehicle = defaultdict(list)
        for event in events:
            vehicle = self.vehicle_for(event)
            if vehicle is not None and event.occurred_at is not None:
                self.events_by_vehicle[vehicle.id].append(event)

        self.trips_by_vehicle = defaultdict(list)
        for trip in trips:
            vehicle = self.vehicle_for(trip)
            if vehicle is not None:
                self.trips_by_vehicle[vehicle.id].append(trip)

    def vehicle_for(self, record):
        """Match a record to a vehicle by registration, then by device serial."""
        vehicle = self.vehicles_by_registration.get(normalize_registration(record.vehicle_registration))
        if vehicle is None and getattr(record, "device_serial", None):
            vehicle = self.vehicles_by_device.get(record.device_serial.strip().upper())
        return vehicle

    def drivers_named(self, name: str, fleet: Optional[str] = None) -> List:
        candidates = self.drivers_by_name.get(normalize_name(name), [])
        if fleet:
            fleet_key = fleet.strip().upper()
            candidates = [d for d in candidates if (d.fleet or "").strip().upper() == fleet_key]
        return candidates

    def mapped_driver(self, source: str, name: Optional[str]) -> Optional[int]:
        if not name:
            return None
        driver_id = self.name_mappings.get((source, normalize_name(name)))
        return driver_id if driver_id in self.drivers else None

    def driver_for_record(self, record) -> Optional[int]:
        """Driver a neighbouring record vouches for, if it names one we know."""
        if record.driver_id is not None and record.driver_id in self.drivers:
            return record.driver_id
        if not record.driver_name:
            return None
        mapped = self.mapped_driver(record.source, record.driver_name)
        if mapped is not None:
            return mapped
        named = self.drivers_named(record.driver_name)
        if len(named) == 1:
            return named[0].id
        return None


Strategy = Callable[[object, ResolutionContext, IdentitySettings], Optional[Resolution]]


def direct_reference(event, context: ResolutionContext, settings: IdentitySettings) -> Optional[Resolution]:
    if event.driver_id is not None and event.driver_id in context.drivers:
        return Resolution(event.driver_id, AttributionMethod.DIRECT, settings.direct,
                          {"source_driver_id": event.driver_id})
    return None


def explicit_name_mapping(event, context: ResolutionContext, settings: IdentitySettings) -> Optional[Resolution]:
    driver_id = context.mapped_driver(event.source, event.driver_name)
    if driver_id is None:
        return None
    return Resolution(driver_id, AttributionMethod.NAME_MAPPING, settings.name_mapping,
                      {"source_system": event.source, "name": event.driver_name})


def _window_tier(event_time: datetime, other_time: datetime, seconds: float,
                 settings: IdentitySettings) -> Optional[Tuple[AttributionMethod, float]]:
    if seconds <= WINDOW_30MIN_SECONDS:
        return AttributionMethod.WINDOW_30MIN, settings.window_30min
    if seconds <= WINDOW_1HOUR_SECONDS:
        return AttributionMethod.WINDOW_1HOUR, settings.window_1hour
    if event_time.date() == other_time.date():
        return AttributionMethod.WINDOW_SAME_DAY, settings.window_same_day
    return None


def vehicle_time_window(event, context: ResolutionContext, settings: IdentitySettings) -> Optional[Resolution]:
    vehicle = context.vehicle_for(event)
    if vehicle is None:
        return None

    candidates = []
    for other in context.events_by_vehicle.get(vehicle.id, []):
        if other.source == event.source:
            continue
        seconds = abs((other.occurred_at - event.occurred_at).total_seconds())
        tier = _window_tier(event.occurred_at, other.occurred_at, seconds, settings)
        if tier is None:
            continue
        driver_id = context.driver_for_record(other)
        if driver_id is None:
            continue
        method, confidence = tier
        candidates.append((confidence, seconds, other, driver_id, method))

    if not candidates:
        return None

    # Highest confidence, then closest in time, then lowest id for determinism
    candidates.sort(key=lambda c: (-c[0], c[1], c[2].source, c[2].id))
    confidence, seconds, other, driver_id, method = candidates[0]
    return Resolution(driver_id, method, confidence, {
        "matched_source": other.source,
        "matched_event_id": other.id,
        "matched_driver_name": other.driver_name,
        "time_diff_minutes": round(seconds / 60.0, 1),
        "candidate_count": len(candidates),
    })


def active_trip_containment(event, context: ResolutionContext, settings: IdentitySettings) -> Optional[Resolution]:
    vehicle = context.vehicle_for(event)
    if vehicle is None:
        return None

    containing = []
    for trip in context.trips_by_vehicle.get(vehicle.id, []):
        if event.source == trip.source and event.id == trip.id:
            continue
        if trip.start_time is None or trip.end_time is None:
            continue
        if not trip.start_time <= event.occurred_at <= trip.end_time:
            continue
        driver_id = context.driver_for_record(trip)
        if driver_id is not None:
            containing.append((trip, driver_id))

    if not containing:
        return None

    # Most recent trip start wins when trips overlap
    containing.sort(key=lambda c: (c[0].start_time, -c[0].id), reverse=True)
    trip, driver_id = containing[0]
    return Resolution(driver_id, AttributionMethod.ACTIVE_TRIP, settings.active_trip, {
        "trip_id": trip.id,
        "trip_start": trip.start_time.isoformat(),
        "trip_end": trip.end_time.isoformat(),
    })


def fuzzy_name_match(event, context: ResolutionContext, settings: IdentitySettings) -> Optional[Resolution]:
    if not event.driver_name:
        return None
    fleet = event.fleet if settings.name_match_same_fleet else None
    matches = context.drivers_named(event.driver_name, fleet)
    if len(matches) != 1:
        if len(matches) > 1:
            logger.debug("Name %r is ambiguous (%d drivers); declining", event.driver_name, len(matches))
        return None
    return Resolution(matches[0].id, AttributionMethod.NAME_MATCH, settings.name_match,
                      {"name": event.driver_name, "fleet_constrained": bool(fleet)})


STRATEGIES: List[Tuple[str, Strategy]] = [
    ("direct", direct_reference),
    ("name_mapping", explicit_name_mapping),
    ("vehicle_window", vehicle_time_window),
    ("active_trip", active_trip_containment),
    ("name_match", fuzzy_name_match),
]

# Strategies that can succeed without knowing the vehicle
_VEHICLE_INDEPENDENT = {"direct"}


def _validate_event(event):
    if event.occurred_at is None:
        raise MalformedRecordError(f"{event.source} event {event.id} has no timestamp", event.id)


def _vehicle_gate(event, context: ResolutionContext) -> Optional[Resolution]:
    vehicle = context.vehicle_for(event)
    if vehicle is None:
        return unresolved("unknown_vehicle")
    if (vehicle.status or "").lower() == "decommissioned":
        return unresolved("decommissioned_vehicle")
    return None


def resolve_event(event, context: ResolutionContext, settings: Optional[IdentitySettings] = None) -> Resolution:
    """Attribute one event to a driver; never returns None."""
    settings = settings or config.get_identity_settings()
    _validate_event(event)

    gate_checked = False
    for name, strategy in STRATEGIES:
        if name not in _VEHICLE_INDEPENDENT and not gate_checked:
            gate_checked = True
            blocked = _vehicle_gate(event, context)
            if blocked is not None:
                logger.debug("%s event %s: %s", event.source, event.id, blocked.evidence["reason"])
                return blocked
        resolution = strategy(event, context, settings)
        if resolution is not None:
            logger.debug("%s event %s resolved by %s (%.2f)", event.source, event.id,
                         resolution.method.value, resolution.confidence)
            return resolution

    return unresolved("no_strategy_matched")


def explain_event(event, context: ResolutionContext, settings: Optional[IdentitySettings] = None) -> Dict:
    """Run every strategy without short-circuiting, for audit screens."""
    settings = settings or config.get_identity_settings()
    _validate_event(event)
    vehicle = context.vehicle_for(event)
    candidates = {}
    for name, strategy in STRATEGIES:
        resolution = strategy(event, context, settings)
        candidates[name] = None if resolution is None else {
            "driver_id": resolution.driver_id,
            "method": resolution.method.value,
            "confidence": resolution.confidence,
            "evidence": resolution.evidence,
        }
    selected = resolve_event(event, context, settings)
    return {
        "event_source": event.source,
        "event_id": event.id,
        "vehicle_id": vehicle.id if vehicle is not None else None,
        "candidates": candidates,
        "selected": {
            "driver_id": selected.driver_id,
            "method": selected.method.value,
            "confidence": selected.confidence,
            "evidence": selected.evidence,
        },
    }
