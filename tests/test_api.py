import pytest
from fleetlink.config import config


class TestHealth:
    """Test service-level endpoints."""

    def test_health(self, client):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        """Test root endpoint."""
        assert client.get("/").json()["message"] == "FleetLink Correlation Service"


class TestCorrelationApi:
    """Test correlation runs through the HTTP API."""

    def run(self, client, **overrides):
        body = {"start_date": "2024-03-01", "end_date": "2024-03-01", "min_confidence": 0}
        body.update(overrides)
        return client.post("/api/correlation/runs", json=body)

    def test_run_and_list(self, client, seeded):
        """Test starting a run and listing its correlations."""
        response = self.run(client)
        assert response.status_code == 200
        stats = response.json()
        assert stats["status"] == "completed"
        assert stats["correlations_created"] == 1

        correlations = client.get("/api/correlations").json()
        assert len(correlations) == 1
        assert correlations[0]["quality_tier"] == "good"
        assert correlations[0]["analysis_run_id"] == stats["run_id"]
        assert client.get("/api/correlations", params={"quality_tier": "excellent"}).json() == []

        run = client.get(f"/api/correlation/runs/{stats['run_id']}").json()
        assert run["status"] == "completed"
        assert run["statistics"]["trips_processed"] == 1

    def test_invalid_run_request(self, client, seeded):
        """Test rejected run parameters."""
        assert self.run(client, end_date="2024-02-01").status_code == 400
        assert self.run(client, min_confidence=150).status_code == 422

    def test_verify_and_summary(self, client, seeded):
        """Test verification and the summary counts."""
        self.run(client)
        correlation_id = client.get("/api/correlations").json()[0]["id"]

        response = client.post(f"/api/correlations/{correlation_id}/verify", json={"notes": "ok"})
        assert response.status_code == 200
        assert response.json()["verified_by_user"] is True

        summary = client.get("/api/correlations/summary").json()
        assert summary["total_correlations"] == 1
        assert summary["verified_count"] == 1

        assert client.post("/api/correlations/999/verify", json={}).status_code == 404

    def test_rollback(self, client, seeded):
        """Test rolling back a run."""
        run_id = self.run(client).json()["run_id"]
        response = client.delete(f"/api/correlation/runs/{run_id}")
        assert response.status_code == 200
        assert response.json()["correlations_deleted"] == 1
        assert client.get("/api/correlations").json() == []
        assert client.delete("/api/correlation/runs/missing").status_code == 404
        assert client.get("/api/correlation/runs/missing").status_code == 404

    def test_trip_candidates_are_not_stored(self, client, seeded):
        """Test candidate preview for one trip."""
        candidates = client.get("/api/trips/1/candidates").json()
        assert len(candidates) == 1
        assert candidates[0]["matched_terminal"] == "Kewdale"
        assert client.get("/api/correlations").json() == []
        assert client.get("/api/trips/42/candidates").status_code == 404


class TestAttributionApi:
    """Test attribution endpoints."""

    def test_resolve_single_event(self, client, seeded):
        """Test on-demand resolution of one event."""
        response = client.post("/api/events/distraction/1/resolve")
        assert response.status_code == 200
        data = response.json()
        assert data["method"] == "vehicle_window_30min"
        assert data["confidence"] == 0.85
        assert data["driver_id"] == 1

        stored = client.get("/api/events/distraction/1/attribution").json()
        assert stored["method"] == "vehicle_window_30min"

    def test_resolve_errors(self, client, seeded):
        """Test unknown sources and ids."""
        assert client.post("/api/events/radar/1/resolve").status_code == 400
        assert client.post("/api/events/distraction/99/resolve").status_code == 404
        assert client.get("/api/events/distraction/1/attribution").status_code == 404

    def test_candidates(self, client, seeded):
        """Test the per-strategy explanation."""
        data = client.get("/api/events/distraction/1/candidates").json()
        assert data["selected"]["method"] == "vehicle_window_30min"
        assert data["candidates"]["vehicle_window"]["driver_id"] == 1

    def test_batch_and_summary(self, client, seeded):
        """Test batch attribution and its summary."""
        response = client.post("/api/attributions/resolve",
                               json={"start_date": "2024-03-01", "end_date": "2024-03-01"})
        assert response.status_code == 200
        assert response.json()["events_processed"] == 3

        summary = client.get("/api/attributions/summary").json()
        assert summary["total_attributions"] == 3
        assert summary["unresolved"] == 0
        assert summary["coverage_pct"] == 100.0
        assert summary["by_method"]["direct"]["count"] == 1

    def test_name_mapping(self, client, seeded):
        """Test adding a name override."""
        response = client.post("/api/name-mappings", json={
            "source_system": "safety_camera", "raw_name": "J. Smith", "driver_id": 2,
        })
        assert response.status_code == 200
        assert response.json()["name_key"] == "J. SMITH"
        assert client.post("/api/events/safety_camera/1/resolve").json()["driver_id"] == 2

        missing = client.post("/api/name-mappings", json={
            "source_system": "safety_camera", "raw_name": "X", "driver_id": 99,
        })
        assert missing.status_code == 404


class TestDriverMetricsApi:
    """Test driver safety endpoints."""

    def test_refresh_and_leaderboard(self, client, seeded):
        """Test metric refresh and the leaderboard."""
        client.post("/api/attributions/resolve", json={"start_date": "2024-03-01", "end_date": "2024-03-01"})
        response = client.post("/api/driver-metrics/refresh", params={"as_of": "2024-03-15T00:00:00"})
        assert response.status_code == 200
        assert response.json()["drivers_updated"] == 2

        metrics = client.get("/api/driver-metrics").json()
        assert {m["driver_id"] for m in metrics} == {1, 2}

        leaderboard = client.get("/api/driver-performance").json()
        assert [row["driver_id"] for row in leaderboard] == [1]
        assert leaderboard[0]["performance_category"] == "Excellent"


class TestTerminalApi:
    """Test terminal lookups."""

    def test_nearest_and_within(self, client, seeded):
        """Test nearest and radius lookups."""
        nearest = client.get("/api/terminals/nearest", params={"lat": -31.95, "lon": 115.86}).json()
        assert nearest["name"] == "Kewdale"
        assert nearest["within_service_area"] is True

        within = client.get("/api/terminals/within", params={"lat": -31.95, "lon": 115.86, "max_km": 5}).json()
        assert within == []

    def test_match(self, client, seeded):
        """Test terminal name matching."""
        hits = client.get("/api/terminals/match", params={"name": "AU TERM KEWDALE"}).json()
        assert hits[0]["name"] == "Kewdale"

    def test_invalid_coordinates(self, client, seeded):
        """Test out of range coordinates."""
        assert client.get("/api/terminals/nearest", params={"lat": 95, "lon": 0}).status_code == 422

    def test_no_terminals(self, client):
        """Test lookups with no terminals loaded."""
        assert client.get("/api/terminals/nearest", params={"lat": -31.95, "lon": 115.86}).status_code == 404


class TestScoringConfigApi:
    """Test runtime scoring configuration."""

    @pytest.fixture(autouse=True)
    def restore_config(self):
        original = config.correlation
        yield
        config.correlation = original

    def test_get_config(self, client):
        """Test reading the scoring config."""
        data = client.get("/api/config/scoring").json()
        assert data["correlation"]["algorithm_version"] == config.correlation.algorithm_version

    def test_update_weights(self, client):
        """Test changing weights with a new version."""
        response = client.put("/api/config/correlation-weights",
                              json={"text_weight": 0.5, "geo_weight": 0.5, "temporal_weight": 0.0,
                                    "algorithm_version": "hybrid_test"})
        assert response.status_code == 200
        assert response.json()["correlation"]["text_weight"] == 0.5
        assert config.get_correlation_settings().algorithm_version == "hybrid_test"

    def test_all_zero_weights_rejected(self, client):
        """Test that all-zero weights are refused."""
        response = client.put("/api/config/correlation-weights",
                              json={"text_weight": 0, "geo_weight": 0, "temporal_weight": 0,
                                    "algorithm_version": "broken"})
        assert response.status_code == 400

    def test_changed_weights_need_new_version(self, client):
        """Reusing the active algorithm version for new weights is refused."""
        current = config.correlation
        response = client.put("/api/config/correlation-weights",
                              json={"text_weight": 0.9, "geo_weight": 0.1, "temporal_weight": 0.0,
                                    "algorithm_version": current.algorithm_version})
        assert response.status_code == 400
        assert config.correlation == current

    def test_same_weights_keep_version(self, client):
        """Re-sending the active weights under the same version is a no-op."""
        current = config.correlation
        response = client.put("/api/config/correlation-weights",
                              json={"text_weight": current.text_weight,
                                    "algorithm_version": current.algorithm_version})
        assert response.status_code == 200
        assert config.correlation == current
