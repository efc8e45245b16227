"""Trip to delivery correlation.

A GPS trip and a billing delivery share no key, so each candidate delivery is
scored on three independent pieces of evidence and the scores are combined
with the weights in ``CorrelationSettings``:

* text: the trip's start and end location text against the delivery's
  customer and terminal text
* geospatial: how deep inside the delivery terminal's service area the trip
  started or ended
* temporal: day difference between trip and delivery
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional, Tuple

from .config import CorrelationSettings, config
from .errors import MalformedRecordError
from .normalizer import compare_text, TextMatch
from .terminals import TerminalIndex, calculate_distance, validate_point

logger = logging.getLogger(__name__)

TIER_EXCELLENT = 90
TIER_GOOD = 75
TIER_FAIR = 60

# Minimum sub-score for a method to count as agreeing
METHOD_THRESHOLDS = {
    "text": 50,
    "geospatial": 50,
    "temporal": 60,
}

LARGE_DATE_GAP_DAYS = 3
LONG_DISTANCE_KM = 100


@dataclass
class CandidateCorrelation:
    trip_id: int
    delivery: object
    delivery_key: str
    overall_confidence: float
    text_confidence: float
    text_match_method: str
    normalized_trip_text: Optional[str]
    normalized_delivery_text: Optional[str]
    geo_confidence: float
    matched_terminal: Optional[str]
    terminal_distance_km: Optional[float]
    within_service_area: bool
    temporal_confidence: float
    date_difference_days: int
    match_methods: List[str]
    quality_tier: str
    requires_manual_review: bool
    quality_flags: List[str] = field(default_factory=list)
    algorithm_version: str = ""

    @property
    def confidence_breakdown(self) -> dict:
        return {
            "text_confidence": self.text_confidence,
            "geo_confidence": self.geo_confidence,
            "temporal_confidence": self.temporal_confidence,
            "weighted_score": self.overall_confidence,
        }

    def to_dict(self) -> dict:
        return {
            "trip_id": self.trip_id,
            "delivery_key": self.delivery_key,
            "bill_of_lading": self.delivery.bill_of_lading,
            "delivery_date": self.delivery.delivery_date.isoformat(),
            "customer_name": self.delivery.customer,
            "terminal_name": self.delivery.terminal_name,
            "carrier": self.delivery.carrier,
            "overall_confidence": self.overall_confidence,
            "confidence_breakdown": self.confidence_breakdown,
            "text_match_method": self.text_match_method,
            "normalized_trip_text": self.normalized_trip_text,
            "normalized_delivery_text": self.normalized_delivery_text,
            "matched_terminal": self.matched_terminal,
            "terminal_distance_km": self.terminal_distance_km,
            "within_service_area": self.within_service_area,
            "date_difference_days": self.date_difference_days,
            "match_methods": self.match_methods,
            "quality_tier": self.quality_tier,
            "requires_manual_review": self.requires_manual_review,
            "quality_flags": self.quality_flags,
            "algorithm_version": self.algorithm_version,
        }


def temporal_confidence(days: int) -> int:
    """Same-day and next-day deliveries are treated alike."""
    days = abs(days)
    if days <= 1:
        return 80
    if days == 2:
        return 60
    if days == 3:
        return 40
    return 20


def geo_confidence(distance_km: float, service_radius_km: float, edge_score: float) -> float:
    """100 at the terminal, falling linearly to ``edge_score`` at the radius; 0 outside."""
    if service_radius_km is None or service_radius_km <= 0 or distance_km > service_radius_km:
        return 0.0
    score = 100.0 - (100.0 - edge_score) * (distance_km / service_radius_km)
    return round(max(0.0, min(100.0, score)), 2)


def combine_confidence(text: float, geo: float, temporal: float, settings: CorrelationSettings) -> float:
    weighted = (
        text * settings.text_weight
        + geo * settings.geo_weight
        + temporal * settings.temporal_weight
    )
    return round(weighted / settings.total_weight, 2)


def quality_tier(overall: float) -> str:
    if overall >= TIER_EXCELLENT:
        return "excellent"
    if overall >= TIER_GOOD:
        return "good"
    if overall >= TIER_FAIR:
        return "fair"
    return "poor"


def match_methods(text: float, geo: float, temporal: float) -> List[str]:
    scores = {"text": text, "geospatial": geo, "temporal": temporal}
    return [name for name, score in scores.items() if score >= METHOD_THRESHOLDS[name]]


def needs_manual_review(tier: str, methods: List[str]) -> bool:
    return tier in ("fair", "poor") and len(methods) < 2


def trip_date(trip) -> date:
    if trip.start_time is None:
        raise MalformedRecordError(f"trip {trip.id} has no start time", trip.id)
    return trip.start_time.date()


def trip_points(trip) -> List[Tuple[str, float, float]]:
    """Start/end GPS points of a trip; half-missing points are ignored, bad ones rejected."""
    points = []
    for label, lat, lon in (
        ("start", trip.start_latitude, trip.start_longitude),
        ("end", trip.end_latitude, trip.end_longitude),
    ):
        if lat is None and lon is None:
            continue
        lat, lon = validate_point(lat, lon, trip.id)
        points.append((label, lat, lon))
    return points


def _trip_texts(trip) -> List[str]:
    return [t for t in (trip.start_location, trip.end_location) if t and t.strip()]


def _best_text_match(trip_texts: List[str], delivery) -> TextMatch:
    best = TextMatch(0, "no_match", None, None)
    for trip_text in trip_texts:
        for delivery_text in (delivery.customer, delivery.terminal_name):
            result = compare_text(trip_text, delivery_text)
            if result.score > best.score:
                best = result
    return best


def _delivery_terminals(delivery, index: TerminalIndex, settings: CorrelationSettings) -> List:
    """Terminals the delivery's free-text terminal name refers to (best matches only)."""
    hits = index.match_by_name(delivery.terminal_name, settings.terminal_name_threshold)
    if not hits:
        return []
    if hits[0].exact:
        return [h.terminal for h in hits if h.exact]
    top = hits[0].similarity
    return [h.terminal for h in hits if h.similarity == top]


def _best_geo_match(points, terminals, settings: CorrelationSettings):
    """(score, terminal, distance, within) for the best trip point / terminal pair."""
    best = (0.0, None, None, False)
    for terminal in terminals:
        for _, lat, lon in points:
            distance = calculate_distance(lat, lon, terminal.latitude, terminal.longitude)
            if distance > settings.max_distance_km:
                continue
            within = distance <= (terminal.service_radius_km or 0.0)
            score = geo_confidence(distance, terminal.service_radius_km, settings.geo_edge_score)
            current_distance = best[2] if best[2] is not None else float("inf")
            if score > best[0] or (score == best[0] and distance < current_distance):
                best = (score, terminal, distance, within)
    return best


def _quality_flags(days: int, distance: Optional[float], text: float, geo: float,
                   unknown_terminal: bool) -> List[str]:
    flags = []
    if days > LARGE_DATE_GAP_DAYS:
        flags.append("large_date_gap")
    if distance is not None and distance > LONG_DISTANCE_KM:
        flags.append("long_distance")
    if text < 50 and geo < 50:
        flags.append("low_confidence")
    if text == 0 and geo == 0:
        flags.append("no_location_match")
    if unknown_terminal:
        flags.append("unknown_terminal")
    return flags


def score_delivery(trip, delivery, index: TerminalIndex, points, trip_texts: List[str],
                   settings: CorrelationSettings) -> CandidateCorrelation:
    """Score one trip/delivery pair. Pure; no storage access."""
    days = abs((delivery.delivery_date - trip_date(trip)).days)

    text_match = _best_text_match(trip_texts, delivery)

    terminals = _delivery_terminals(delivery, index, settings) if delivery.terminal_name else []
    unknown_terminal = bool(delivery.terminal_name) and not terminals
    geo_score, terminal, distance, within = _best_geo_match(points, terminals, settings)

    temporal = temporal_confidence(days)
    text_score = float(text_match.score)
    overall = combine_confidence(text_score, geo_score, temporal, settings)
    tier = quality_tier(overall)
    methods = match_methods(text_score, geo_score, temporal)

    return CandidateCorrelation(
        trip_id=trip.id,
        delivery=delivery,
        delivery_key=delivery.delivery_key,
        overall_confidence=overall,
        text_confidence=text_score,
        text_match_method=text_match.method,
        normalized_trip_text=text_match.normalized_a,
        normalized_delivery_text=text_match.normalized_b,
        geo_confidence=geo_score,
        matched_terminal=terminal.name if terminal is not None else None,
        terminal_distance_km=round(distance, 3) if distance is not None else None,
        within_service_area=within,
        temporal_confidence=float(temporal),
        date_difference_days=days,
        match_methods=methods,
        quality_tier=tier,
        requires_manual_review=needs_manual_review(tier, methods),
        quality_flags=_quality_flags(days, distance, text_score, geo_score, unknown_terminal),
        algorithm_version=settings.algorithm_version,
    )


def correlate_trip(trip, deliveries: Iterable, index: TerminalIndex,
                   settings: Optional[CorrelationSettings] = None,
                   min_confidence: float = 0.0) -> List[CandidateCorrelation]:
    """Rank candidate deliveries for one trip, best first.

    Only deliveries within ``settings.date_window_days`` of the trip are
    considered, and a candidate needs some location evidence (text or geo)
    to be returned. An empty list is a normal outcome.
    """
    settings = settings or config.get_correlation_settings()
    day = trip_date(trip)
    points = trip_points(trip)
    trip_texts = _trip_texts(trip)

    if not points and not trip_texts:
        logger.debug("Trip %s has neither GPS nor location text", trip.id)
        return []

    results = []
    for delivery in deliveries:
        if delivery.delivery_date is None:
            continue
        if abs((delivery.delivery_date - day).days) > settings.date_window_days:
            continue
        candidate = score_delivery(trip, delivery, index, points, trip_texts, settings)
        if candidate.text_confidence == 0 and candidate.geo_confidence == 0:
            continue
        if candidate.overall_confidence < min_confidence:
            continue
        results.append(candidate)

    results.sort(key=lambda c: (-c.overall_confidence, c.date_difference_days, c.delivery_key))
    return results
