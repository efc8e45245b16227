from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Boolean, ForeignKey, JSON, Text,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class Driver(Base):
    __tablename__ = "drivers"
    id = Column(Integer, primary_key=True)
    full_name = Column(String(255), nullable=False)
    employee_id = Column(String(64), unique=True)
    license_number = Column(String(64))
    fleet = Column(String(64))
    depot = Column(String(128))
    status = Column(String(32), default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Integer, primary_key=True)
    registration = Column(String(32), unique=True, nullable=False)
    fleet = Column(String(64))
    depot = Column(String(128))
    status = Column(String(32), default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class VehicleDevice(Base):
    """Telemetry device serial to vehicle cross-reference."""
    __tablename__ = "vehicle_devices"
    id = Column(Integer, primary_key=True)
    device_serial = Column(String(64), unique=True, nullable=False)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    source_system = Column(String(32))

class DriverNameMapping(Base):
    __tablename__ = "driver_name_mappings"
    __table_args__ = (UniqueConstraint("source_system", "name_key", name="uq_name_mapping"),)
    id = Column(Integer, primary_key=True)
    source_system = Column(String(32), nullable=False)
    name_key = Column(String(255), nullable=False)
    raw_name = Column(String(255))
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class RawEventMixin:
    """Columns shared by every ingested telemetry/safety record."""
    SOURCE = None

    id = Column(Integer, primary_key=True)
    external_id = Column(String(128))
    vehicle_registration = Column(String(32))
    device_serial = Column(String(64))
    occurred_at = Column(DateTime(timezone=True))
    driver_name = Column(String(255))
    driver_id = Column(Integer)
    fleet = Column(String(64))
    latitude = Column(Float)
    longitude = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def source(self) -> str:
        return self.SOURCE

class SafetyCameraEvent(RawEventMixin, Base):
    __tablename__ = "safety_camera_events"
    __table_args__ = (Index("ix_camera_vehicle_time", "vehicle_registration", "occurred_at"),)
    SOURCE = "safety_camera"
    event_type = Column(String(64))
    trigger = Column(String(128))
    severity = Column(String(16))
    verified = Column(Boolean, default=False)
    status = Column(String(32))

class DistractionEvent(RawEventMixin, Base):
    __tablename__ = "distraction_events"
    __table_args__ = (Index("ix_distraction_vehicle_time", "vehicle_registration", "occurred_at"),)
    SOURCE = "distraction"
    event_type = Column(String(64))
    severity = Column(String(16))
    confirmation = Column(String(32))
    verified = Column(Boolean, default=False)
    duration_seconds = Column(Float)
    speed_kph = Column(Float)

class TripRecord(RawEventMixin, Base):
    __tablename__ = "trip_records"
    __table_args__ = (Index("ix_trip_vehicle_span", "vehicle_registration", "start_time", "end_time"),)
    SOURCE = "trip"
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))
    start_latitude = Column(Float)
    start_longitude = Column(Float)
    end_latitude = Column(Float)
    end_longitude = Column(Float)
    start_location = Column(String(255))
    end_location = Column(String(255))
    distance_km = Column(Float)

EVENT_MODELS = {
    SafetyCameraEvent.SOURCE: SafetyCameraEvent,
    DistractionEvent.SOURCE: DistractionEvent,
    TripRecord.SOURCE: TripRecord,
}

class Attribution(Base):
    __tablename__ = "attributions"
    __table_args__ = (UniqueConstraint("event_source", "event_id", name="uq_attribution_event"),)
    id = Column(Integer, primary_key=True)
    event_source = Column(String(32), nullable=False)
    event_id = Column(Integer, nullable=False)
    driver_id = Column(Integer, ForeignKey("drivers.id"))
    method = Column(String(32), nullable=False)
    confidence = Column(Float, nullable=False, default=0.0)
    evidence = Column(JSON)
    resolved_at = Column(DateTime(timezone=True))

class Terminal(Base):
    __tablename__ = "terminals"
    id = Column(Integer, primary_key=True)
    name = Column(String(128), unique=True, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    carrier = Column(String(32))
    service_radius_km = Column(Float, nullable=False, default=50.0)
    active = Column(Boolean, default=True)

class DeliveryRecord(Base):
    __tablename__ = "delivery_records"
    __table_args__ = (
        UniqueConstraint("bill_of_lading", "delivery_date", "customer", name="uq_delivery"),
    )
    id = Column(Integer, primary_key=True)
    bill_of_lading = Column(String(64), nullable=False)
    delivery_date = Column(Date, nullable=False)
    customer = Column(String(255), nullable=False)
    terminal_name = Column(String(255))
    carrier = Column(String(16))
    volume_litres = Column(Float)

    @property
    def delivery_key(self) -> str:
        return f"{self.bill_of_lading}|{self.delivery_date.isoformat()}|{self.customer.strip().upper()}"

class CorrelationRun(Base):
    __tablename__ = "correlation_runs"
    id = Column(String(32), primary_key=True)
    algorithm_version = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="running")
    parameters = Column(JSON)
    statistics = Column(JSON)
    error = Column(Text)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))

class Correlation(Base):
    __tablename__ = "correlations"
    __table_args__ = (UniqueConstraint("trip_id", "delivery_key", name="uq_trip_delivery"),)
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trip_records.id"), nullable=False)
    delivery_key = Column(String(400), nullable=False)
    bill_of_lading = Column(String(64))
    delivery_date = Column(Date)
    customer_name = Column(String(255))
    terminal_name = Column(String(255))
    carrier = Column(String(16))
    delivery_volume_litres = Column(Float)

    overall_confidence = Column(Float, nullable=False)
    confidence_breakdown = Column(JSON)
    text_confidence = Column(Float)
    text_match_method = Column(String(32))
    normalized_trip_text = Column(String(255))
    normalized_delivery_text = Column(String(255))
    geo_confidence = Column(Float)
    matched_terminal = Column(String(128))
    terminal_distance_km = Column(Float)
    within_service_area = Column(Boolean)
    temporal_confidence = Column(Float)
    date_difference_days = Column(Integer)
    match_methods = Column(JSON)
    quality_tier = Column(String(16))
    quality_flags = Column(JSON)
    requires_manual_review = Column(Boolean, default=False)

    algorithm_version = Column(String(32))
    analysis_run_id = Column(String(32), ForeignKey("correlation_runs.id"))
    verified_by_user = Column(Boolean, default=False)
    verified_at = Column(DateTime(timezone=True))
    verification_notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class DriverSafetyMetric(Base):
    __tablename__ = "driver_safety_metrics"
    id = Column(Integer, primary_key=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), unique=True, nullable=False)
    as_of = Column(DateTime(timezone=True))
    events_30d = Column(Integer)
    events_prev_30d = Column(Integer)
    events_90d = Column(Integer)
    events_total = Column(Integer)
    distraction_events_month = Column(Integer)
    fatigue_events_month = Column(Integer)
    fov_events_month = Column(Integer)
    critical_events_month = Column(Integer)
    high_events_month = Column(Integer)
    total_events_month = Column(Integer)
    verified_events_month = Column(Integer)
    verification_rate_pct = Column(Float)
    days_since_first_event = Column(Integer)
    days_since_last_event = Column(Integer)
    trend_pct = Column(Float)
    avg_attribution_confidence = Column(Float)
    risk_classification = Column(String(16))
    safety_rank = Column(Integer)
    safety_percentile = Column(Float)
    performance_category = Column(String(32))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
