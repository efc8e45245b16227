import pytest
from datetime import date, datetime
from sqlalchemy.exc import OperationalError
from fleetlink import orchestrator
from fleetlink.models import (
    Attribution, Correlation, CorrelationRun, DistractionEvent, DriverSafetyMetric, SafetyCameraEvent, TripRecord
)
from fleetlink.orchestrator import rollback_run, run_attribution, run_batch_correlation
from fleetlink.persistence import (
    get_correlation_summary,
    refresh_driver_safety_metrics,
    resolve_single_event,
    upsert_name_mapping,
    verify_correlation
)

MARCH_1 = date(2024, 3, 1)


class TestBatchCorrelation:
    """Test batch correlation runs against an in-memory database."""

    def test_run_statistics(self, db, seeded):
        """Test statistics of a completed run."""
        stats = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)

        assert stats.status == "completed"
        assert stats.trips_processed == 1
        assert stats.trips_failed == 0
        assert stats.correlations_created == 1
        assert stats.high_confidence_count == 0
        assert stats.manual_review_count == 0
        assert 75 <= stats.avg_confidence < 90
        assert len(stats.run_id) == 32

        run = db.query(CorrelationRun).filter(CorrelationRun.id == stats.run_id).one()
        assert run.status == "completed"
        assert run.statistics["correlations_created"] == 1
        assert run.parameters["settings"]["algorithm_version"] == stats.algorithm_version

        correlation = db.query(Correlation).one()
        assert correlation.analysis_run_id == stats.run_id
        assert correlation.quality_tier == "good"
        assert correlation.matched_terminal == "Kewdale"

    def test_rerun_upserts_instead_of_duplicating(self, db, seeded):
        """Test re-runs upsert by trip and delivery."""
        first = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)
        second = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)

        assert first.run_id != second.run_id
        assert db.query(Correlation).count() == 1
        assert db.query(Correlation).one().analysis_run_id == second.run_id

    def test_min_confidence_filters(self, db, seeded):
        """Test the minimum confidence filter."""
        stats = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=95)
        assert stats.correlations_created == 0
        assert db.query(Correlation).count() == 0

    def test_trips_outside_range_or_fleet_are_skipped(self, db, seeded):
        """Test date range and fleet filters."""
        assert run_batch_correlation(db, date(2024, 4, 1), date(2024, 4, 2)).trips_processed == 0
        assert run_batch_correlation(db, MARCH_1, MARCH_1, fleet_filter="GSF").trips_processed == 0

    def test_max_trips_caps_the_batch(self, db, seeded):
        """Test the trip cap."""
        db.add(TripRecord(id=2, vehicle_registration="ABC-123", fleet="SMB",
                          start_time=datetime(2024, 3, 1, 12), end_time=datetime(2024, 3, 1, 14),
                          start_location="Kewdale"))
        db.commit()
        stats = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0, max_trips=1)
        assert stats.trips_processed == 1

    def test_malformed_trip_does_not_abort(self, db, seeded):
        """Test a bad trip is skipped."""
        db.add(TripRecord(id=2, vehicle_registration="ABC-123", fleet="SMB",
                          start_time=datetime(2024, 3, 1, 5), end_time=datetime(2024, 3, 1, 7),
                          end_latitude=123.0, end_longitude=115.0))
        db.commit()

        stats = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)

        assert stats.status == "completed"
        assert stats.trips_failed == 1
        assert stats.trips_processed == 1
        assert stats.correlations_created == 1

    def test_storage_failure_marks_run_failed(self, db, seeded, monkeypatch):
        """Test storage errors fail the run."""
        def broken_upsert(*args, **kwargs):
            raise OperationalError("INSERT INTO correlations", {}, Exception("disk I/O error"))

        monkeypatch.setattr(orchestrator, "upsert_correlation", broken_upsert)
        stats = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)

        assert stats.status == "failed"
        assert "disk I/O error" in stats.error
        assert stats.correlations_created == 0
        run = db.query(CorrelationRun).filter(CorrelationRun.id == stats.run_id).one()
        assert run.status == "failed"
        assert run.error == stats.error

    def test_clear_existing_only_on_request(self, db, seeded):
        """Test clearing old correlations."""
        run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)
        kept = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=95)
        assert kept.correlations_cleared == 0
        assert db.query(Correlation).count() == 1

        cleared = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=95, clear_existing=True)
        assert cleared.correlations_cleared == 1
        assert db.query(Correlation).count() == 0

    def test_invalid_range(self, db):
        """Test end before start."""
        with pytest.raises(ValueError):
            run_batch_correlation(db, date(2024, 3, 2), MARCH_1)

    def test_rollback_run(self, db, seeded):
        """Test rolling back a run."""
        stats = run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)

        assert rollback_run(db, stats.run_id) == 1
        assert db.query(Correlation).count() == 0
        assert db.query(CorrelationRun).filter(CorrelationRun.id == stats.run_id).one().status == "rolled_back"
        assert rollback_run(db, "does-not-exist") is None

    def test_verification_survives_rerun(self, db, seeded):
        """Test verification is kept on re-run."""
        run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)
        correlation = db.query(Correlation).one()
        verify_correlation(db, correlation.id, "checked against docket")

        run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)

        correlation = db.query(Correlation).one()
        assert correlation.verified_by_user is True
        assert correlation.verification_notes == "checked against docket"
        assert correlation.requires_manual_review is False

    def test_summary(self, db, seeded):
        """Test the correlation summary."""
        run_batch_correlation(db, MARCH_1, MARCH_1, min_confidence=0)
        summary = get_correlation_summary(db)
        assert summary["total_correlations"] == 1
        assert summary["needs_review_count"] == 0
        assert summary["verified_count"] == 0
        assert summary["by_terminal"][0]["name"] == "Kewdale"
        assert summary["by_carrier"][0]["name"] == "SMB"


class TestAttributionRuns:
    """Test batch and single-event attribution."""

    def test_batch_attribution(self, db, seeded):
        """Test batch attribution methods."""
        summary = run_attribution(db, MARCH_1, MARCH_1)

        assert summary["events_processed"] == 3
        distraction = db.query(Attribution).filter(Attribution.event_source == "distraction").one()
        assert distraction.method == "vehicle_window_30min"
        assert distraction.confidence == 0.85
        assert distraction.driver_id == 1
        camera = db.query(Attribution).filter(Attribution.event_source == "safety_camera").one()
        assert camera.method == "name_match"
        trip = db.query(Attribution).filter(Attribution.event_source == "trip").one()
        assert trip.method == "direct"
        assert trip.confidence == 1.0

    def test_rerun_is_idempotent(self, db, seeded):
        """Test repeated batch attribution."""
        run_attribution(db, MARCH_1, MARCH_1)
        before = [(a.event_source, a.event_id, a.driver_id, a.method, a.confidence, a.evidence)
                  for a in db.query(Attribution).order_by(Attribution.id)]
        run_attribution(db, MARCH_1, MARCH_1)
        after = [(a.event_source, a.event_id, a.driver_id, a.method, a.confidence, a.evidence)
                 for a in db.query(Attribution).order_by(Attribution.id)]
        assert before == after

    def test_resolve_single_event_after_mapping(self, db, seeded):
        """Test re-resolving after adding an override."""
        run_attribution(db, MARCH_1, MARCH_1)
        upsert_name_mapping(db, "safety_camera", "J. Smith", 2, "payroll name differs")

        attribution = resolve_single_event(db, "safety_camera", 1)

        assert attribution.method == "name_mapping"
        assert attribution.driver_id == 2
        assert db.query(Attribution).filter(Attribution.event_source == "safety_camera").count() == 1

    def add_events_around_midnight(self, db):
        db.add_all([
            DistractionEvent(id=2, vehicle_registration="ABC-123", fleet="SMB",
                             occurred_at=datetime(2024, 3, 1, 23, 50), event_type="Mobile Phone",
                             severity="low"),
            SafetyCameraEvent(id=2, vehicle_registration="ABC-123", fleet="SMB", driver_name="J. Smith",
                              occurred_at=datetime(2024, 3, 2, 0, 5), event_type="Fatigue",
                              severity="low"),
        ])
        db.commit()

    def test_single_event_window_crosses_midnight(self, db, seeded):
        """An event at 23:50 is vouched for by a named event at 00:05 the next day."""
        self.add_events_around_midnight(db)

        attribution = resolve_single_event(db, "distraction", 2)

        assert attribution.method == "vehicle_window_30min"
        assert attribution.confidence == 0.85
        assert attribution.driver_id == 1
        assert attribution.evidence["matched_event_id"] == 2

    def test_batch_result_does_not_depend_on_range(self, db, seeded):
        """Resolving one day or two gives the same attribution for the late event."""
        self.add_events_around_midnight(db)

        def late_event():
            return db.query(Attribution).filter(
                Attribution.event_source == "distraction", Attribution.event_id == 2
            ).one()

        run_attribution(db, MARCH_1, MARCH_1)
        single_day = (late_event().method, late_event().confidence, late_event().driver_id)
        run_attribution(db, MARCH_1, date(2024, 3, 2))
        two_days = (late_event().method, late_event().confidence, late_event().driver_id)

        assert single_day == two_days == ("vehicle_window_30min", 0.85, 1)

    def test_resolve_unknown_source(self, db, seeded):
        """Unknown sources raise; unknown ids return None."""
        with pytest.raises(ValueError):
            resolve_single_event(db, "radar", 1)
        assert resolve_single_event(db, "distraction", 99) is None


class TestDriverMetricsRefresh:
    """Test recomputing stored driver metrics."""

    def test_refresh_upserts_one_row_per_driver(self, db, seeded):
        """Test metric refresh upserts per driver."""
        run_attribution(db, MARCH_1, MARCH_1)
        as_of = datetime(2024, 3, 15)

        refresh_driver_safety_metrics(db, as_of)
        refresh_driver_safety_metrics(db, as_of)

        assert db.query(DriverSafetyMetric).count() == 2
        smith = db.query(DriverSafetyMetric).filter(DriverSafetyMetric.driver_id == 1).one()
        assert smith.events_30d == 2
        assert smith.critical_events_month == 1
        assert smith.verified_events_month == 1
        assert smith.risk_classification == "Medium Risk"
        assert smith.safety_rank == 1
        lee = db.query(DriverSafetyMetric).filter(DriverSafetyMetric.driver_id == 2).one()
        assert lee.events_total == 0
        assert lee.safety_percentile is None
