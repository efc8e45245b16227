import math
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import pandas as pd

from .config import TERMINAL_NAME_THRESHOLD
from .errors import MalformedRecordError
from .normalizer import normalize_text, similarity

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

TERMINAL_CSV_COLUMNS = ["name", "latitude", "longitude", "carrier", "service_radius_km"]


def validate_point(lat, lon, record_id=None):
    """Raise MalformedRecordError unless (lat, lon) is a real coordinate."""
    if lat is None or lon is None:
        raise MalformedRecordError("missing coordinate", record_id)
    try:
        lat = float(lat)
        lon = float(lon)
    except (TypeError, ValueError):
        raise MalformedRecordError(f"non-numeric coordinate ({lat!r}, {lon!r})", record_id)
    if math.isnan(lat) or math.isnan(lon) or not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise MalformedRecordError(f"coordinate out of range ({lat}, {lon})", record_id)
    return lat, lon


def calculate_distance(lat1, lon1, lat2, lon2):
    """Calculate distance between two GPS points in kilometers using Haversine formula."""
    lat1_rad = math.radians(lat1)
    lon1_rad = math.radians(lon1)
    lat2_rad = math.radians(lat2)
    lon2_rad = math.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = math.sin(dlat/2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon/2)**2
    # Rounding can push a a hair above 1 for antipodal points
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    return EARTH_RADIUS_KM * c


@dataclass(frozen=True)
class TerminalHit:
    terminal: object
    distance_km: float
    within_service_area: bool


@dataclass(frozen=True)
class NameHit:
    terminal: object
    similarity: float
    exact: bool


class TerminalIndex:
    """In-memory spatial lookup over terminal reference data.

    Terminals are any objects exposing ``name``, ``latitude``, ``longitude``
    and ``service_radius_km`` (ORM rows in production). Inactive terminals
    (``active`` is False) are left out of every query.
    """

    def __init__(self, terminals: Iterable):
        self.terminals = []
        for terminal in terminals:
            if getattr(terminal, "active", True) is False:
                continue
            try:
                validate_point(terminal.latitude, terminal.longitude, terminal.name)
            except MalformedRecordError as e:
                logger.warning("Skipping terminal %s: %s", terminal.name, e)
                continue
            self.terminals.append(terminal)
        self._normalized = [(t, normalize_text(t.name)) for t in self.terminals]

    def __len__(self):
        return len(self.terminals)

    def _hit(self, terminal, lat, lon) -> TerminalHit:
        distance = calculate_distance(lat, lon, terminal.latitude, terminal.longitude)
        return TerminalHit(terminal, distance, distance <= (terminal.service_radius_km or 0.0))

    def find_within_distance(self, lat: float, lon: float, max_km: float) -> List[TerminalHit]:
        """Terminals within ``max_km`` of the point, nearest first."""
        lat, lon = validate_point(lat, lon)
        hits = [self._hit(t, lat, lon) for t in self.terminals]
        hits = [h for h in hits if h.distance_km <= max_km]
        hits.sort(key=lambda h: (h.distance_km, h.terminal.name))
        return hits

    def find_nearest(self, lat: float, lon: float) -> Optional[TerminalHit]:
        """Single closest terminal, inside its service area or not."""
        lat, lon = validate_point(lat, lon)
        if not self.terminals:
            return None
        return min(
            (self._hit(t, lat, lon) for t in self.terminals),
            key=lambda h: (h.distance_km, h.terminal.name),
        )

    def match_by_name(self, text: str, threshold: float = TERMINAL_NAME_THRESHOLD) -> List[NameHit]:
        """Exact normalized matches first, then similar names above ``threshold``."""
        target = normalize_text(text)
        if not target:
            return []
        exact = []
        fuzzy = []
        for terminal, normalized in self._normalized:
            if normalized == target:
                exact.append(NameHit(terminal, 1.0, True))
                continue
            score = similarity(normalized, target)
            # A terminal name embedded in the text ("AU TERM KEWDALE") is as
            # good as a near-exact spelling
            if normalized and f" {normalized} " in f" {target} ":
                score = max(score, 0.9)
            if score >= threshold:
                fuzzy.append(NameHit(terminal, score, False))
        exact.sort(key=lambda h: h.terminal.name)
        fuzzy.sort(key=lambda h: (-h.similarity, h.terminal.name))
        return exact + fuzzy


def load_terminals_csv(csv_path: str) -> List[dict]:
    """Read terminal reference data exported by administrators."""
    df = pd.read_csv(csv_path)
    missing = [c for c in ("name", "latitude", "longitude") if c not in df.columns]
    if missing:
        raise MalformedRecordError(f"terminal CSV missing columns: {', '.join(missing)}")

    df = df.reindex(columns=TERMINAL_CSV_COLUMNS)
    df["name"] = df["name"].astype(str).str.strip()
    df["service_radius_km"] = df["service_radius_km"].fillna(50.0)

    records = []
    for row in df.to_dict("records"):
        try:
            row["latitude"], row["longitude"] = validate_point(row["latitude"], row["longitude"], row["name"])
        except MalformedRecordError as e:
            logger.warning("Skipping terminal row %s: %s", row["name"], e)
            continue
        if pd.isna(row["carrier"]):
            row["carrier"] = None
        records.append(row)

    logger.info("Loaded %d terminals from %s", len(records), csv_path)
    return records
