import pytest
from fastapi.testclient import TestClient

from grouptrip.core.pipeline import TripOptimizationService
from grouptrip.core.settings import Settings
from grouptrip.db.repository import InMemoryTripRepository
from grouptrip.main import create_app
from conftest import build_trip, destinations_along


@pytest.fixture
def client():
    settings = Settings(_env_file=None, RETRY_BASE_DELAY_MS=1, RETRY_MAX_DELAY_MS=2)
    repository = InMemoryTripRepository()
    repository.add_trip(build_trip(destinations_along(3), group_id="group-1"))
    service = TripOptimizationService(repository, repository, settings=settings)
    with TestClient(create_app(service, settings)) as test_client:
        yield test_client


class TestOptimizeEndpoint:
    """HTTP surface of the optimizer."""

    def test_optimize_success(self, client):
        response = client.post("/groups/group-1/optimize", json={"requesterId": "m0"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["error"] is None
        assert body["data"]["route"]["destination_ids"]
        assert "processingTimeMs" in body

    def test_options_are_passed_through(self, client):
        response = client.post(
            "/groups/group-1/optimize",
            json={"requesterId": "m0", "options": {"enableMultiDayScheduling": False, "seed": 5}},
        )
        assert response.status_code == 200
        assert response.json()["data"]["days"] == []

    def test_non_member_gets_403(self, client):
        response = client.post("/groups/group-1/optimize", json={"requesterId": "stranger"})

        assert response.status_code == 403
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["kind"] == "permission_denied"
        assert body["error"]["suggestedActions"]

    def test_unknown_group_gets_422(self, client):
        response = client.post("/groups/nope/optimize", json={"requesterId": "m0"})
        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "validation_error"

    def test_invalid_body_is_rejected(self, client):
        response = client.post("/groups/group-1/optimize", json={"requesterId": "m0", "options": {"timeoutMs": 0}})
        assert response.status_code == 422

    def test_blank_requester_is_rejected(self, client):
        response = client.post("/groups/group-1/optimize", json={"requesterId": "   "})
        assert response.status_code == 422

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/groups/group-1/optimize",
            json={"requesterId": "m0"},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"

    def test_statistics_after_a_run(self, client):
        client.post("/groups/group-1/optimize", json={"requesterId": "m0"})
        response = client.get("/groups/optimizer/statistics")

        assert response.status_code == 200
        assert "optimizing" in response.json()["stages"]

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
