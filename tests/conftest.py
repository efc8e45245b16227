import os

# Keep the app's own engine off disk; tests use their own session below
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from datetime import date, datetime
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleetlink.db import get_db
from fleetlink.main import app
from fleetlink.models import (
    Base, DeliveryRecord, DistractionEvent, Driver, SafetyCameraEvent, Terminal, TripRecord, Vehicle,
)

KEWDALE = (-31.9790, 115.9500)


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Session bound to the test engine."""
    session = sessionmaker(bind=engine)()
    yield session
    session.close()


@pytest.fixture
def client(db):
    """API client that uses the test session."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(db):
    """Two drivers, one truck, the Kewdale terminal, one trip, one delivery and two safety events."""
    db.add_all([
        Driver(id=1, full_name="J. Smith", employee_id="E001", fleet="SMB"),
        Driver(id=2, full_name="Ann Lee", employee_id="E002", fleet="SMB"),
        Vehicle(id=1, registration="ABC-123", fleet="SMB", status="active"),
        Terminal(id=1, name="Kewdale", latitude=KEWDALE[0], longitude=KEWDALE[1],
                 carrier="SMB", service_radius_km=75.0, active=True),
        TripRecord(
            id=1, vehicle_registration="ABC-123", driver_id=2, fleet="SMB",
            occurred_at=datetime(2024, 3, 1, 6, 0), start_time=datetime(2024, 3, 1, 6, 0),
            end_time=datetime(2024, 3, 1, 9, 0),
            start_latitude=-30.0, start_longitude=118.0,
            end_latitude=KEWDALE[0] + 0.01, end_longitude=KEWDALE[1],
            end_location="Kewdale",
        ),
        DeliveryRecord(
            id=1, bill_of_lading="BOL1", delivery_date=date(2024, 3, 2),
            customer="ABC Pty Ltd", terminal_name="AU TERM KEWDALE", carrier="SMB",
            volume_litres=32000.0,
        ),
        DistractionEvent(
            id=1, vehicle_registration="ABC-123", fleet="SMB",
            occurred_at=datetime(2024, 3, 1, 10, 0), event_type="Mobile Phone",
            severity="high", confirmation="Verified",
        ),
        SafetyCameraEvent(
            id=1, vehicle_registration="ABC-123", fleet="SMB", driver_name="J. Smith",
            occurred_at=datetime(2024, 3, 1, 10, 15), event_type="Fatigue",
            severity="critical", verified=False,
        ),
    ])
    db.commit()
    return {"trip_id": 1, "delivery_id": 1, "driver_ids": [1, 2]}
