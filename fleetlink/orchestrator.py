"""Batch runs: trip to delivery correlation and event attribution over a date range."""
import time
import uuid
import logging
from dataclasses import dataclass, asdict, field
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import CorrelationSettings, IdentitySettings, config
from .correlation import correlate_trip
from .errors import MalformedRecordError
from .identity import resolve_event
from .persistence import (
    build_resolution_context, build_terminal_index, clear_correlations_in_window, create_run,
    day_start, delete_run_correlations, finish_run, get_deliveries_in_window, get_events_in_range,
    get_run, get_trips_for_run, upsert_attribution, upsert_correlation,
)

logger = logging.getLogger(__name__)


@dataclass
class RunStatistics:
    run_id: str
    status: str = "running"
    algorithm_version: str = ""
    trips_processed: int = 0
    trips_failed: int = 0
    correlations_created: int = 0
    correlations_cleared: int = 0
    high_confidence_count: int = 0
    manual_review_count: int = 0
    avg_confidence: float = 0.0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    _confidence_total: float = field(default=0.0, repr=False)

    def record(self, overall_confidence: float, requires_manual_review: bool, high_threshold: float):
        self.correlations_created += 1
        self._confidence_total += overall_confidence
        if overall_confidence >= high_threshold:
            self.high_confidence_count += 1
        if requires_manual_review:
            self.manual_review_count += 1
        self.avg_confidence = round(self._confidence_total / self.correlations_created, 2)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data.pop("_confidence_total")
        return data


def new_run_id() -> str:
    return uuid.uuid4().hex


def run_batch_correlation(db: Session, start_date: date, end_date: date,
                          fleet_filter: Optional[str] = None,
                          min_confidence: Optional[float] = None,
                          max_trips: Optional[int] = None,
                          clear_existing: bool = False,
                          settings: Optional[CorrelationSettings] = None) -> RunStatistics:
    """Correlate every eligible trip in [start_date, end_date] with billing deliveries.

    A trip that fails to score is logged and skipped. A storage error stops
    the run; it is marked failed and the statistics gathered so far are
    returned. Correlations already written stay in place.
    """
    if end_date < start_date:
        raise ValueError("end_date must not be before start_date")

    settings = settings or config.get_correlation_settings()
    min_confidence = config.min_confidence if min_confidence is None else min_confidence
    max_trips = config.max_trips if max_trips is None else max_trips

    stats = RunStatistics(run_id=new_run_id(), algorithm_version=settings.algorithm_version)
    parameters = {
        "start_date": start_date.isoformat(),
        "end_date": end_date.isoformat(),
        "fleet_filter": fleet_filter,
        "min_confidence": min_confidence,
        "max_trips": max_trips,
        "clear_existing": clear_existing,
    }
    started = time.monotonic()
    logger.info("Correlation run %s started: %s", stats.run_id, parameters)

    try:
        create_run(db, stats.run_id, settings, parameters)

        if clear_existing:
            stats.correlations_cleared = clear_correlations_in_window(db, start_date, end_date, fleet_filter)
            logger.info("Cleared %d existing correlations", stats.correlations_cleared)

        trips = get_trips_for_run(db, start_date, end_date, fleet_filter, max_trips)
        deliveries = get_deliveries_in_window(db, start_date, end_date, settings.date_window_days)
        index = build_terminal_index(db)
        logger.info("Run %s: %d trips, %d candidate deliveries, %d terminals",
                    stats.run_id, len(trips), len(deliveries), len(index))

        for trip in trips:
            try:
                candidates = correlate_trip(trip, deliveries, index, settings, min_confidence)
            except (MalformedRecordError, ValueError, TypeError) as e:
                stats.trips_failed += 1
                logger.warning("Skipping trip %s: %s", trip.id, e)
                continue

            for candidate in candidates:
                upsert_correlation(db, candidate, stats.run_id)
                stats.record(candidate.overall_confidence, candidate.requires_manual_review,
                             config.high_confidence_threshold)
            stats.trips_processed += 1

        stats.status = "completed"
    except SQLAlchemyError as e:
        db.rollback()
        stats.status = "failed"
        stats.error = str(e)
        logger.exception("Correlation run %s failed", stats.run_id)

    stats.duration_seconds = round(time.monotonic() - started, 3)
    try:
        finish_run(db, stats.run_id, stats.status, stats.to_dict(), stats.error)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not record the outcome of run %s", stats.run_id)

    logger.info("Correlation run %s %s: %d trips, %d correlations (%d high, %d review), avg %.2f",
                stats.run_id, stats.status, stats.trips_processed, stats.correlations_created,
                stats.high_confidence_count, stats.manual_review_count, stats.avg_confidence)
    return stats


def run_attribution(db: Session, start_date: date, end_date: date,
                    settings: Optional[IdentitySettings] = None) -> Dict:
    """Resolve every event in [start_date, end_date] and upsert its attribution."""
    if end_date < start_date:
        raise ValueError("end_date must not be before start_date")

    start = day_start(start_date)
    end = day_start(end_date + timedelta(days=1))
    context = build_resolution_context(db, start, end)
    events = get_events_in_range(db, start, end)

    resolved_at = datetime.now()
    summary = {"events_processed": 0, "events_failed": 0, "resolved": 0, "unresolved": 0, "by_method": {}}
    for event in events:
        try:
            resolution = resolve_event(event, context, settings)
        except MalformedRecordError as e:
            summary["events_failed"] += 1
            logger.warning("Skipping %s event %s: %s", event.source, event.id, e)
            continue
        upsert_attribution(db, event.source, event.id, resolution, resolved_at)
        summary["events_processed"] += 1
        summary["resolved" if resolution.resolved else "unresolved"] += 1
        method = resolution.method.value
        summary["by_method"][method] = summary["by_method"].get(method, 0) + 1

    logger.info("Attributed %d events (%d unresolved, %d skipped)",
                summary["events_processed"], summary["unresolved"], summary["events_failed"])
    return summary


def rollback_run(db: Session, run_id: str) -> Optional[int]:
    """Remove the correlations a run wrote. Returns None for an unknown run."""
    if get_run(db, run_id) is None:
        return None
    deleted = delete_run_correlations(db, run_id)
    logger.info("Rolled back run %s: %d correlations deleted", run_id, deleted)
    return deleted
