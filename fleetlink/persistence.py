import logging
from datetime import datetime, date, time, timedelta
from typing import Dict, List, Optional
from sqlalchemy import and_, case, func, or_
from sqlalchemy.orm import Session
from .aggregator import compute_driver_safety_metrics, metrics_to_records, rank_driver_performance
from .config import CorrelationSettings, IdentitySettings, config
from .correlation import CandidateCorrelation
from .identity import WINDOW_1HOUR_SECONDS, Resolution, ResolutionContext, explain_event, resolve_event
from .models import (
    Attribution, Correlation, CorrelationRun, DeliveryRecord, DistractionEvent, Driver,
    DriverNameMapping, DriverSafetyMetric, EVENT_MODELS, SafetyCameraEvent, Terminal,
    TripRecord, Vehicle, VehicleDevice,
)
from .normalizer import normalize_name
from .terminals import TerminalIndex, load_terminals_csv

logger = logging.getLogger(__name__)

SAFETY_EVENT_MODELS = (SafetyCameraEvent, DistractionEvent)


def day_start(d: date) -> datetime:
    """Midnight at the start of ``d``."""
    return datetime.combine(d, time.min)


# --- Terminals ---------------------------------------------------------------

def upsert_terminal(db: Session, name: str, latitude: float, longitude: float,
                    carrier: Optional[str] = None, service_radius_km: float = 50.0,
                    active: bool = True) -> Terminal:
    """Insert or update a terminal by name."""
    terminal = db.query(Terminal).filter(Terminal.name == name).first()
    if terminal is None:
        terminal = Terminal(name=name)
        db.add(terminal)
    terminal.latitude = latitude
    terminal.longitude = longitude
    terminal.carrier = carrier
    terminal.service_radius_km = service_radius_km
    terminal.active = active
    db.commit()
    db.refresh(terminal)
    return terminal


def load_terminals_from_csv(db: Session, csv_path: str) -> int:
    """Upsert terminal reference data from an administrator CSV export."""
    rows = load_terminals_csv(csv_path)
    for row in rows:
        upsert_terminal(db, row["name"], row["latitude"], row["longitude"],
                        row["carrier"], float(row["service_radius_km"]))
    return len(rows)


def build_terminal_index(db: Session) -> TerminalIndex:
    """Index of all stored terminals."""
    return TerminalIndex(db.query(Terminal).filter(Terminal.active.is_(True)).all())


# --- Trips and deliveries ----------------------------------------------------

def get_trips_for_run(db: Session, start_date: date, end_date: date,
                      fleet_filter: Optional[str] = None, max_trips: Optional[int] = None) -> List[TripRecord]:
    """Trips starting inside [start_date, end_date], oldest first."""
    query = db.query(TripRecord).filter(
        TripRecord.start_time >= day_start(start_date),
        TripRecord.start_time < day_start(end_date + timedelta(days=1)),
    )
    if fleet_filter:
        query = query.filter(TripRecord.fleet == fleet_filter)
    query = query.order_by(TripRecord.start_time, TripRecord.id)
    if max_trips:
        query = query.limit(max_trips)
    return query.all()


def get_deliveries_in_window(db: Session, start_date: date, end_date: date,
                             window_days: int) -> List[DeliveryRecord]:
    """Deliveries dated within ``window_days`` of the range."""
    return db.query(DeliveryRecord).filter(
        DeliveryRecord.delivery_date >= start_date - timedelta(days=window_days),
        DeliveryRecord.delivery_date <= end_date + timedelta(days=window_days),
    ).order_by(DeliveryRecord.delivery_date, DeliveryRecord.id).all()


# --- Correlations ------------------------------------------------------------

def upsert_correlation(db: Session, candidate: CandidateCorrelation,
                       run_id: Optional[str] = None) -> Correlation:
    """Upsert a correlation keyed by (trip id, delivery key).

    Computed fields are replaced; a reviewer's verification survives.
    """
    correlation = db.query(Correlation).filter(
        Correlation.trip_id == candidate.trip_id,
        Correlation.delivery_key == candidate.delivery_key
    ).first()

    if correlation is None:
        correlation = Correlation(trip_id=candidate.trip_id, delivery_key=candidate.delivery_key)
        db.add(correlation)

    delivery = candidate.delivery
    correlation.bill_of_lading = delivery.bill_of_lading
    correlation.delivery_date = delivery.delivery_date
    correlation.customer_name = delivery.customer
    correlation.terminal_name = delivery.terminal_name
    correlation.carrier = delivery.carrier
    correlation.delivery_volume_litres = delivery.volume_litres
    correlation.overall_confidence = candidate.overall_confidence
    correlation.confidence_breakdown = candidate.confidence_breakdown
    correlation.text_confidence = candidate.text_confidence
    correlation.text_match_method = candidate.text_match_method
    correlation.normalized_trip_text = candidate.normalized_trip_text
    correlation.normalized_delivery_text = candidate.normalized_delivery_text
    correlation.geo_confidence = candidate.geo_confidence
    correlation.matched_terminal = candidate.matched_terminal
    correlation.terminal_distance_km = candidate.terminal_distance_km
    correlation.within_service_area = candidate.within_service_area
    correlation.temporal_confidence = candidate.temporal_confidence
    correlation.date_difference_days = candidate.date_difference_days
    correlation.match_methods = list(candidate.match_methods)
    correlation.quality_tier = candidate.quality_tier
    correlation.quality_flags = list(candidate.quality_flags)
    correlation.requires_manual_review = candidate.requires_manual_review and not correlation.verified_by_user
    correlation.algorithm_version = candidate.algorithm_version
    correlation.analysis_run_id = run_id

    db.commit()
    db.refresh(correlation)
    return correlation


def clear_correlations_in_window(db: Session, start_date: date, end_date: date,
                                 fleet_filter: Optional[str] = None) -> int:
    """Delete stored correlations for trips that start inside the window."""
    trip_ids = db.query(TripRecord.id).filter(
        TripRecord.start_time >= day_start(start_date),
        TripRecord.start_time < day_start(end_date + timedelta(days=1)),
    )
    if fleet_filter:
        trip_ids = trip_ids.filter(TripRecord.fleet == fleet_filter)
    deleted = db.query(Correlation).filter(
        Correlation.trip_id.in_(trip_ids.scalar_subquery())
    ).delete(synchronize_session=False)
    db.commit()
    return deleted


def list_correlations(db: Session, trip_id: Optional[int] = None, min_confidence: float = 0.0,
                      quality_tier: Optional[str] = None, requires_review: Optional[bool] = None,
                      run_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Correlation]:
    """Stored correlations, best first."""
    query = db.query(Correlation).filter(Correlation.overall_confidence >= min_confidence)
    if trip_id is not None:
        query = query.filter(Correlation.trip_id == trip_id)
    if quality_tier:
        query = query.filter(Correlation.quality_tier == quality_tier)
    if requires_review is not None:
        query = query.filter(Correlation.requires_manual_review.is_(requires_review))
    if run_id:
        query = query.filter(Correlation.analysis_run_id == run_id)
    return query.order_by(
        Correlation.overall_confidence.desc(), Correlation.id
    ).offset(offset).limit(limit).all()


def verify_correlation(db: Session, correlation_id: int, notes: Optional[str] = None) -> Optional[Correlation]:
    """Mark a correlation as checked by a person."""
    correlation = db.query(Correlation).filter(Correlation.id == correlation_id).first()
    if correlation is None:
        return None
    correlation.verified_by_user = True
    correlation.verified_at = datetime.now()
    correlation.verification_notes = notes
    correlation.requires_manual_review = False
    db.commit()
    db.refresh(correlation)
    return correlation


def get_correlation_summary(db: Session) -> Dict:
    """Totals plus per-terminal and per-carrier breakdowns."""
    threshold = config.high_confidence_threshold
    total, avg_confidence, high, verified, review = db.query(
        func.count(Correlation.id),
        func.avg(Correlation.overall_confidence),
        func.sum(case((Correlation.overall_confidence >= threshold, 1), else_=0)),
        func.sum(case((Correlation.verified_by_user.is_(True), 1), else_=0)),
        func.sum(case((Correlation.requires_manual_review.is_(True), 1), else_=0)),
    ).one()

    def breakdown(column):
        rows = db.query(
            column, func.count(Correlation.id), func.avg(Correlation.overall_confidence)
        ).group_by(column).order_by(func.count(Correlation.id).desc()).all()
        return [
            {"name": name, "correlations": count, "avg_confidence": round(avg or 0.0, 2)}
            for name, count, avg in rows
        ]

    tiers = dict(db.query(Correlation.quality_tier, func.count(Correlation.id))
                 .group_by(Correlation.quality_tier).all())

    return {
        "total_correlations": total,
        "high_confidence_count": high or 0,
        "verified_count": verified or 0,
        "needs_review_count": review or 0,
        "avg_confidence": round(avg_confidence or 0.0, 2),
        "by_quality_tier": tiers,
        "by_terminal": breakdown(Correlation.matched_terminal),
        "by_carrier": breakdown(Correlation.carrier),
    }


# --- Runs --------------------------------------------------------------------

def create_run(db: Session, run_id: str, settings: CorrelationSettings, parameters: Dict) -> CorrelationRun:
    """Record the start of a correlation run."""
    run = CorrelationRun(
        id=run_id,
        algorithm_version=settings.algorithm_version,
        status="running",
        parameters={**parameters, "settings": settings.as_dict()},
        started_at=datetime.now(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def finish_run(db: Session, run_id: str, status: str, statistics: Dict,
               error: Optional[str] = None) -> Optional[CorrelationRun]:
    """Store a run's final status and statistics."""
    run = db.query(CorrelationRun).filter(CorrelationRun.id == run_id).first()
    if run is None:
        return None
    run.status = status
    run.statistics = statistics
    run.error = error
    run.finished_at = datetime.now()
    db.commit()
    db.refresh(run)
    return run


def get_run(db: Session, run_id: str) -> Optional[CorrelationRun]:
    """Get a correlation run by id."""
    return db.query(CorrelationRun).filter(CorrelationRun.id == run_id).first()


def delete_run_correlations(db: Session, run_id: str) -> int:
    """Delete every correlation last written by ``run_id``."""
    deleted = db.query(Correlation).filter(
        Correlation.analysis_run_id == run_id
    ).delete(synchronize_session=False)
    run = get_run(db, run_id)
    if run is not None:
        run.status = "rolled_back"
    db.commit()
    return deleted


# --- Identity resolution -----------------------------------------------------

def build_resolution_context(db: Session, start: datetime, end: datetime) -> ResolutionContext:
    """Load reference data plus every event that could vouch for events in [start, end).

    The window covers the whole calendar days touched and at least one hour
    either side, so the hourly windows reach across midnight.
    """
    reach = timedelta(seconds=WINDOW_1HOUR_SECONDS)
    padded_start = min(day_start(start.date()), start - reach)
    padded_end = max(day_start(end.date() + timedelta(days=1)), end + reach)

    events = []
    for model in SAFETY_EVENT_MODELS:
        events.extend(db.query(model).filter(
            model.occurred_at >= padded_start,
            model.occurred_at < padded_end,
        ).all())

    trips = db.query(TripRecord).filter(
        TripRecord.start_time < padded_end,
        or_(TripRecord.end_time.is_(None), TripRecord.end_time >= padded_start),
    ).all()

    return ResolutionContext(
        drivers=db.query(Driver).all(),
        vehicles=db.query(Vehicle).all(),
        devices=db.query(VehicleDevice).all(),
        name_mappings=db.query(DriverNameMapping).all(),
        events=events,
        trips=trips,
    )


def get_event(db: Session, source: str, event_id: int):
    """Get one raw event by source and id."""
    model = EVENT_MODELS.get(source)
    if model is None:
        raise ValueError(f"unknown event source '{source}'")
    return db.query(model).filter(model.id == event_id).first()


def get_events_in_range(db: Session, start: datetime, end: datetime) -> List:
    """Every raw event with ``occurred_at`` in [start, end)."""
    events = []
    for model in EVENT_MODELS.values():
        events.extend(db.query(model).filter(
            model.occurred_at >= start, model.occurred_at < end
        ).order_by(model.occurred_at, model.id).all())
    return events


def upsert_attribution(db: Session, source: str, event_id: int, resolution: Resolution,
                       resolved_at: Optional[datetime] = None) -> Attribution:
    """Replace the current attribution of an event."""
    attribution = db.query(Attribution).filter(
        Attribution.event_source == source,
        Attribution.event_id == event_id
    ).first()

    if attribution is None:
        attribution = Attribution(event_source=source, event_id=event_id)
        db.add(attribution)

    attribution.driver_id = resolution.driver_id
    attribution.method = resolution.method.value
    attribution.confidence = resolution.confidence
    attribution.evidence = resolution.evidence
    attribution.resolved_at = resolved_at or datetime.now()
    db.commit()
    db.refresh(attribution)
    return attribution


def resolve_single_event(db: Session, source: str, event_id: int,
                         settings: Optional[IdentitySettings] = None) -> Optional[Attribution]:
    """Re-resolve one event on demand and store the result."""
    event = get_event(db, source, event_id)
    if event is None:
        return None
    occurred = event.occurred_at or datetime.now()
    context = build_resolution_context(db, occurred, occurred)
    resolution = resolve_event(event, context, settings)
    return upsert_attribution(db, source, event_id, resolution)


def explain_single_event(db: Session, source: str, event_id: int,
                         settings: Optional[IdentitySettings] = None) -> Optional[Dict]:
    """Every strategy's candidate for one event, without storing anything."""
    event = get_event(db, source, event_id)
    if event is None:
        return None
    occurred = event.occurred_at or datetime.now()
    context = build_resolution_context(db, occurred, occurred)
    return explain_event(event, context, settings)


def get_attribution(db: Session, source: str, event_id: int) -> Optional[Attribution]:
    """Get the stored attribution of one event."""
    return db.query(Attribution).filter(
        Attribution.event_source == source,
        Attribution.event_id == event_id
    ).first()


def get_attribution_summary(db: Session) -> Dict:
    """Attribution coverage overall and per method."""
    rows = db.query(
        Attribution.method,
        func.count(Attribution.id),
        func.avg(Attribution.confidence)
    ).group_by(Attribution.method).all()

    total = sum(count for _, count, _ in rows)
    unresolved = sum(count for method, count, _ in rows if method == "unknown")
    return {
        "total_attributions": total,
        "resolved": total - unresolved,
        "unresolved": unresolved,
        "coverage_pct": round((total - unresolved) / total * 100, 1) if total else 0.0,
        "by_method": {
            method: {"count": count, "avg_confidence": round(avg or 0.0, 2)}
            for method, count, avg in rows
        },
    }


def upsert_name_mapping(db: Session, source_system: str, raw_name: str, driver_id: int,
                        notes: Optional[str] = None) -> DriverNameMapping:
    """Create or update a name override for a source system."""
    name_key = normalize_name(raw_name)
    mapping = db.query(DriverNameMapping).filter(
        DriverNameMapping.source_system == source_system,
        DriverNameMapping.name_key == name_key
    ).first()
    if mapping is None:
        mapping = DriverNameMapping(source_system=source_system, name_key=name_key)
        db.add(mapping)
    mapping.raw_name = raw_name
    mapping.driver_id = driver_id
    mapping.notes = notes
    db.commit()
    db.refresh(mapping)
    return mapping


# --- Driver safety metrics ---------------------------------------------------

def get_attributed_safety_events(db: Session, as_of: datetime) -> List[Dict]:
    """Resolved safety events up to ``as_of`` as flat records for the aggregator."""
    records = []
    for model in SAFETY_EVENT_MODELS:
        rows = db.query(model, Attribution).join(
            Attribution,
            and_(Attribution.event_source == model.SOURCE, Attribution.event_id == model.id)
        ).filter(
            Attribution.driver_id.isnot(None),
            model.occurred_at <= as_of,
        ).all()
        for event, attribution in rows:
            verified = bool(event.verified)
            if model is DistractionEvent:
                verified = verified or (event.confirmation or "").lower() == "verified"
            records.append({
                "driver_id": attribution.driver_id,
                "source": model.SOURCE,
                "event_id": event.id,
                "occurred_at": event.occurred_at,
                "event_type": event.event_type,
                "severity": event.severity,
                "verified": verified,
                "attribution_confidence": attribution.confidence,
            })
    return records


def upsert_driver_metric(db: Session, driver_id: int, as_of: datetime, values: Dict) -> DriverSafetyMetric:
    """Upsert the metric row of a driver; existing values are fully replaced."""
    metric = db.query(DriverSafetyMetric).filter(DriverSafetyMetric.driver_id == driver_id).first()
    if metric is None:
        metric = DriverSafetyMetric(driver_id=driver_id)
        db.add(metric)
    metric.as_of = as_of
    for column in DriverSafetyMetric.__table__.columns.keys():
        if column in ("id", "driver_id", "as_of", "created_at"):
            continue
        setattr(metric, column, values.get(column))
    return metric


def get_driver_metrics(db: Session, limit: int = 100, offset: int = 0) -> List[DriverSafetyMetric]:
    """Stored driver metrics ordered by driver."""
    return db.query(DriverSafetyMetric).order_by(
        DriverSafetyMetric.events_30d.desc(), DriverSafetyMetric.driver_id
    ).offset(offset).limit(limit).all()


def get_driver_performance(db: Session, limit: int = 100) -> List[DriverSafetyMetric]:
    """Ranked drivers, safest first."""
    return db.query(DriverSafetyMetric).filter(
        DriverSafetyMetric.safety_rank.isnot(None)
    ).order_by(DriverSafetyMetric.safety_rank, DriverSafetyMetric.driver_id).limit(limit).all()


def refresh_driver_safety_metrics(db: Session, as_of: Optional[datetime] = None) -> List[DriverSafetyMetric]:
    """Recompute every driver's metrics from stored attributions and upsert them."""
    as_of = as_of or datetime.now()
    records = get_attributed_safety_events(db, as_of)
    driver_ids = [driver_id for (driver_id,) in db.query(Driver.id).all()]
    metrics = rank_driver_performance(compute_driver_safety_metrics(records, as_of, driver_ids))

    rows = [upsert_driver_metric(db, values["driver_id"], as_of, values)
            for values in metrics_to_records(metrics)]
    db.commit()
    logger.info("Refreshed safety metrics for %d drivers", len(rows))
    return rows
