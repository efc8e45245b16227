from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
from datetime import date, datetime
from ..config import API_DEFAULT_LIMIT, API_MAX_LIMIT, config
from ..correlation import correlate_trip
from ..db import get_db
from ..errors import MalformedRecordError
from ..models import Driver, TripRecord
from ..orchestrator import rollback_run, run_attribution, run_batch_correlation
from ..persistence import (
    build_terminal_index, explain_single_event, get_attribution, get_attribution_summary,
    get_correlation_summary, get_deliveries_in_window, get_driver_metrics, get_driver_performance,
    get_run, list_correlations, refresh_driver_safety_metrics, resolve_single_event,
    upsert_name_mapping, verify_correlation,
)

router = APIRouter()


class CorrelationRunRequest(BaseModel):
    start_date: date
    end_date: date
    fleet_filter: Optional[str] = None
    min_confidence: Optional[float] = Field(None, ge=0, le=100)
    max_trips: Optional[int] = Field(None, ge=1)
    clear_existing: bool = False


class AttributionRunRequest(BaseModel):
    start_date: date
    end_date: date


class VerifyRequest(BaseModel):
    notes: Optional[str] = None


class NameMappingRequest(BaseModel):
    source_system: str
    raw_name: str = Field(..., min_length=1)
    driver_id: int
    notes: Optional[str] = None


class CorrelationWeightsRequest(BaseModel):
    text_weight: Optional[float] = Field(None, ge=0)
    geo_weight: Optional[float] = Field(None, ge=0)
    temporal_weight: Optional[float] = Field(None, ge=0)
    algorithm_version: str = Field(..., min_length=1)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def correlation_to_dict(correlation) -> Dict[str, Any]:
    return {
        "id": correlation.id,
        "trip_id": correlation.trip_id,
        "delivery_key": correlation.delivery_key,
        "bill_of_lading": correlation.bill_of_lading,
        "delivery_date": _iso(correlation.delivery_date),
        "customer_name": correlation.customer_name,
        "terminal_name": correlation.terminal_name,
        "carrier": correlation.carrier,
        "overall_confidence": correlation.overall_confidence,
        "confidence_breakdown": correlation.confidence_breakdown,
        "text_match_method": correlation.text_match_method,
        "matched_terminal": correlation.matched_terminal,
        "terminal_distance_km": correlation.terminal_distance_km,
        "within_service_area": correlation.within_service_area,
        "date_difference_days": correlation.date_difference_days,
        "match_methods": correlation.match_methods,
        "quality_tier": correlation.quality_tier,
        "quality_flags": correlation.quality_flags,
        "requires_manual_review": correlation.requires_manual_review,
        "algorithm_version": correlation.algorithm_version,
        "analysis_run_id": correlation.analysis_run_id,
        "verified_by_user": correlation.verified_by_user,
        "verified_at": _iso(correlation.verified_at),
        "verification_notes": correlation.verification_notes,
    }


def run_to_dict(run) -> Dict[str, Any]:
    return {
        "run_id": run.id,
        "algorithm_version": run.algorithm_version,
        "status": run.status,
        "parameters": run.parameters,
        "statistics": run.statistics,
        "error": run.error,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
    }


def attribution_to_dict(attribution) -> Dict[str, Any]:
    return {
        "event_source": attribution.event_source,
        "event_id": attribution.event_id,
        "driver_id": attribution.driver_id,
        "method": attribution.method,
        "confidence": attribution.confidence,
        "evidence": attribution.evidence,
        "resolved_at": _iso(attribution.resolved_at),
    }


def metric_to_dict(metric) -> Dict[str, Any]:
    data = {
        column: getattr(metric, column)
        for column in metric.__table__.columns.keys()
        if column not in ("id", "created_at")
    }
    data["as_of"] = _iso(metric.as_of)
    return data


def terminal_hit_to_dict(hit) -> Dict[str, Any]:
    return {
        "name": hit.terminal.name,
        "carrier": hit.terminal.carrier,
        "latitude": hit.terminal.latitude,
        "longitude": hit.terminal.longitude,
        "service_radius_km": hit.terminal.service_radius_km,
        "distance_km": round(hit.distance_km, 3),
        "within_service_area": hit.within_service_area,
    }


# --- Correlation runs --------------------------------------------------------

@router.post("/correlation/runs")
def start_correlation_run(request: CorrelationRunRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Run batch trip to delivery correlation over a date range."""
    if request.end_date < request.start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    stats = run_batch_correlation(
        db,
        request.start_date,
        request.end_date,
        fleet_filter=request.fleet_filter,
        min_confidence=request.min_confidence,
        max_trips=request.max_trips,
        clear_existing=request.clear_existing,
    )
    return stats.to_dict()


@router.get("/correlation/runs/{run_id}")
def get_correlation_run(run_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get parameters and statistics of a correlation run."""
    try:
        run = get_run(db, run_id)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run_to_dict(run)


@router.delete("/correlation/runs/{run_id}")
def rollback_correlation_run(run_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Delete every correlation a run produced."""
    try:
        deleted = rollback_run(db, run_id)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    if deleted is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return {"run_id": run_id, "correlations_deleted": deleted}


# --- Correlations ------------------------------------------------------------

@router.get("/correlations")
def list_correlations_endpoint(
    db: Session = Depends(get_db),
    trip_id: Optional[int] = Query(None, description="Filter by trip ID"),
    min_confidence: float = Query(0.0, ge=0, le=100, description="Minimum overall confidence"),
    quality_tier: Optional[str] = Query(None, description="excellent, good, fair or poor"),
    requires_review: Optional[bool] = Query(None, description="Filter by manual review flag"),
    run_id: Optional[str] = Query(None, description="Filter by analysis run"),
    limit: int = Query(API_DEFAULT_LIMIT, ge=1, le=API_MAX_LIMIT, description="Number of correlations to return"),
    offset: int = Query(0, ge=0, description="Number of correlations to skip")
) -> List[Dict[str, Any]]:
    """Get stored correlations, best first."""
    try:
        correlations = list_correlations(db, trip_id, min_confidence, quality_tier,
                                         requires_review, run_id, limit, offset)
        return [correlation_to_dict(c) for c in correlations]
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


@router.get("/correlations/summary")
def correlation_summary(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get correlation totals and breakdowns by terminal and carrier."""
    try:
        return get_correlation_summary(db)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


@router.post("/correlations/{correlation_id}/verify")
def verify_correlation_endpoint(correlation_id: int, request: VerifyRequest,
                                db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Mark a correlation as confirmed by a reviewer."""
    try:
        correlation = verify_correlation(db, correlation_id, request.notes)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    if correlation is None:
        raise HTTPException(status_code=404, detail=f"Correlation {correlation_id} not found")
    return correlation_to_dict(correlation)


@router.get("/trips/{trip_id}/candidates")
def trip_candidates(
    trip_id: int,
    db: Session = Depends(get_db),
    min_confidence: float = Query(0.0, ge=0, le=100, description="Minimum overall confidence")
) -> List[Dict[str, Any]]:
    """Score candidate deliveries for one trip without storing them."""
    trip = db.query(TripRecord).filter(TripRecord.id == trip_id).first()
    if trip is None:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")
    if trip.start_time is None:
        raise HTTPException(status_code=400, detail=f"Trip {trip_id} has no start time")

    settings = config.get_correlation_settings()
    day = trip.start_time.date()
    deliveries = get_deliveries_in_window(db, day, day, settings.date_window_days)
    try:
        candidates = correlate_trip(trip, deliveries, build_terminal_index(db), settings, min_confidence)
    except MalformedRecordError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [c.to_dict() for c in candidates]


# --- Attribution -------------------------------------------------------------

@router.post("/events/{source}/{event_id}/resolve")
def resolve_event_endpoint(source: str, event_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Re-resolve the driver of a single event and store the result."""
    try:
        attribution = resolve_single_event(db, source, event_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if attribution is None:
        raise HTTPException(status_code=404, detail=f"{source} event {event_id} not found")
    return attribution_to_dict(attribution)


@router.get("/events/{source}/{event_id}/attribution")
def get_event_attribution(source: str, event_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get the stored attribution of an event."""
    attribution = get_attribution(db, source, event_id)
    if attribution is None:
        raise HTTPException(status_code=404, detail=f"No attribution for {source} event {event_id}")
    return attribution_to_dict(attribution)


@router.get("/events/{source}/{event_id}/candidates")
def event_candidates(source: str, event_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Show what every attribution strategy would pick for an event."""
    try:
        explanation = explain_single_event(db, source, event_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if explanation is None:
        raise HTTPException(status_code=404, detail=f"{source} event {event_id} not found")
    return explanation


@router.post("/attributions/resolve")
def resolve_attributions(request: AttributionRunRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Attribute every event in a date range."""
    if request.end_date < request.start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    try:
        return run_attribution(db, request.start_date, request.end_date)
    except SQLAlchemyError as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


@router.get("/attributions/summary")
def attribution_summary(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get attribution coverage and a breakdown by method."""
    try:
        return get_attribution_summary(db)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


@router.post("/name-mappings")
def create_name_mapping(request: NameMappingRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Add or replace a source-specific driver name override."""
    if db.query(Driver).filter(Driver.id == request.driver_id).first() is None:
        raise HTTPException(status_code=404, detail=f"Driver {request.driver_id} not found")
    mapping = upsert_name_mapping(db, request.source_system, request.raw_name,
                                  request.driver_id, request.notes)
    return {
        "id": mapping.id,
        "source_system": mapping.source_system,
        "name_key": mapping.name_key,
        "raw_name": mapping.raw_name,
        "driver_id": mapping.driver_id,
        "notes": mapping.notes,
    }


# --- Driver safety -----------------------------------------------------------

@router.post("/driver-metrics/refresh")
def refresh_driver_metrics(
    db: Session = Depends(get_db),
    as_of: Optional[datetime] = Query(None, description="Compute metrics as of this time")
) -> Dict[str, Any]:
    """Recompute safety metrics for every driver."""
    as_of = as_of or datetime.now()
    try:
        rows = refresh_driver_safety_metrics(db, as_of)
    except SQLAlchemyError as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    return {"drivers_updated": len(rows), "as_of": _iso(as_of)}


@router.get("/driver-metrics")
def list_driver_metrics(
    db: Session = Depends(get_db),
    limit: int = Query(API_DEFAULT_LIMIT, ge=1, le=API_MAX_LIMIT, description="Number of drivers to return"),
    offset: int = Query(0, ge=0, description="Number of drivers to skip")
) -> List[Dict[str, Any]]:
    """Get per-driver safety metrics."""
    try:
        return [metric_to_dict(m) for m in get_driver_metrics(db, limit, offset)]
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


@router.get("/driver-performance")
def driver_performance(
    db: Session = Depends(get_db),
    limit: int = Query(API_DEFAULT_LIMIT, ge=1, le=API_MAX_LIMIT, description="Number of drivers to return")
) -> List[Dict[str, Any]]:
    """Get the safety leaderboard, safest driver first."""
    try:
        return [
            {
                "driver_id": m.driver_id,
                "safety_rank": m.safety_rank,
                "safety_percentile": m.safety_percentile,
                "performance_category": m.performance_category,
                "events_30d": m.events_30d,
                "risk_classification": m.risk_classification,
            }
            for m in get_driver_performance(db, limit)
        ]
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


# --- Terminals ---------------------------------------------------------------

@router.get("/terminals/nearest")
def nearest_terminal(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Get the closest active terminal to a point."""
    hit = build_terminal_index(db).find_nearest(lat, lon)
    if hit is None:
        raise HTTPException(status_code=404, detail="No active terminals")
    return terminal_hit_to_dict(hit)


@router.get("/terminals/within")
def terminals_within(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    max_km: float = Query(50.0, gt=0, description="Search radius in km"),
    db: Session = Depends(get_db)
) -> List[Dict[str, Any]]:
    """Get active terminals within a distance of a point, nearest first."""
    return [terminal_hit_to_dict(h) for h in build_terminal_index(db).find_within_distance(lat, lon, max_km)]


@router.get("/terminals/match")
def match_terminal(
    name: str = Query(..., min_length=1, description="Free-text terminal name"),
    threshold: float = Query(0.3, ge=0, le=1),
    db: Session = Depends(get_db)
) -> List[Dict[str, Any]]:
    """Resolve a free-text terminal name to known terminals."""
    return [
        {"name": h.terminal.name, "similarity": round(h.similarity, 4), "exact": h.exact}
        for h in build_terminal_index(db).match_by_name(name, threshold)
    ]


# --- Scoring configuration ---------------------------------------------------

@router.get("/config/scoring")
def get_scoring_config() -> Dict[str, Any]:
    """Get the active scoring weights and confidences."""
    return config.get_scoring_config()


@router.put("/config/correlation-weights")
def update_correlation_weights(request: CorrelationWeightsRequest) -> Dict[str, Any]:
    """Change correlation weights; a new algorithm version is required."""
    try:
        config.update_correlation_weights(
            text_weight=request.text_weight,
            geo_weight=request.geo_weight,
            temporal_weight=request.temporal_weight,
            algorithm_version=request.algorithm_version,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return config.get_scoring_config()
