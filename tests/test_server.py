"""Tests for the HTTP server endpoints."""

import asyncio

import pytest
from conftest import FRI, MON, SAT, THU, WED, default_resources
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from ralloc.catalog import StaticCatalog
from ralloc.config import Settings
from ralloc.errors import CatalogUnavailableError
from ralloc.server import create_app, run_periodically


def iso(instant) -> str:
    return instant.isoformat()


def propose(client, resource="X", project="P1", start=MON, end=FRI, percentage=60):
    response = client.post(
        "/v1/allocations",
        json={
            "resource_id": resource,
            "project_id": project,
            "start": iso(start),
            "end": iso(end),
            "percentage": percentage,
            "requested_by": "planner",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def approve(client, allocation_id, **body):
    return client.post(
        f"/v1/allocations/{allocation_id}/approve", json={"actor": "manager", **body}
    )


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_returns_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data


class TestAllocationEndpoints:
    """Propose, approve and the rest of the lifecycle over HTTP."""

    def test_propose(self, client):
        data = propose(client)
        assert data["state"] == "pending"
        assert data["version"] == 1
        assert data["warnings"] == []

    def test_propose_returns_soft_warnings(self, client):
        propose(client, percentage=60)
        data = propose(client, project="P2", start=WED, end=THU, percentage=50)
        assert data["warnings"][0]["peak_percentage"] == 110

    def test_propose_invalid_percentage(self, client):
        response = client.post(
            "/v1/allocations",
            json={
                "resource_id": "X",
                "project_id": "P1",
                "start": iso(MON),
                "end": iso(FRI),
                "percentage": 150,
                "requested_by": "planner",
            },
        )
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_propose_unknown_resource(self, client):
        response = client.post(
            "/v1/allocations",
            json={
                "resource_id": "NOPE",
                "project_id": "P1",
                "start": iso(MON),
                "end": iso(FRI),
                "percentage": 10,
                "requested_by": "planner",
            },
        )
        assert response.status_code == 422

    def test_approve_conflict_returns_409_with_details(self, client):
        first = propose(client)
        assert approve(client, first["id"]).status_code == 200
        second = propose(client, project="P2", start=WED, end=THU, percentage=50)

        response = approve(client, second["id"])
        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "capacity_conflict"
        assert data["conflict"]["peak_percentage"] == 110
        assert [c["project_id"] for c in data["conflict"]["overlapping"]] == ["P1"]

    def test_stale_version_returns_412(self, client):
        record = propose(client)
        response = approve(client, record["id"], expected_version=5)
        assert response.status_code == 412
        assert response.json()["actual_version"] == 1

    def test_invalid_transition_returns_409(self, client):
        record = propose(client)
        response = client.post(
            f"/v1/allocations/{record['id']}/activate", json={"actor": "ops"}
        )
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    def test_unknown_allocation_returns_404(self, client):
        assert client.get("/v1/allocations/missing").status_code == 404
        assert approve(client, "missing").status_code == 404

    def test_full_lifecycle(self, client):
        record = propose(client)
        allocation_id = record["id"]

        approve(client, allocation_id)
        response = client.post(
            f"/v1/allocations/{allocation_id}/amend",
            json={"actor": "manager", "start": iso(MON), "end": iso(SAT), "percentage": 40},
        )
        assert response.status_code == 200
        assert response.json()["percentage"] == 40

        client.post(f"/v1/allocations/{allocation_id}/activate", json={"actor": "ops"})
        response = client.post(
            f"/v1/allocations/{allocation_id}/cancel",
            json={"actor": "ops", "reason": "project halted"},
        )
        assert response.json()["state"] == "cancelled"
        assert response.json()["note"] == "project halted"

        history = client.get(f"/v1/allocations/{allocation_id}/history").json()
        assert [t["to_state"] for t in history["transitions"]] == [
            "pending",
            "approved",
            "approved",
            "active",
            "cancelled",
        ]
        assert history["transitions"][-1]["from_state"] == "active"

    def test_reject(self, client):
        record = propose(client)
        response = client.post(
            f"/v1/allocations/{record['id']}/reject",
            json={"actor": "manager", "reason": "no budget"},
        )
        assert response.status_code == 200
        assert response.json()["state"] == "rejected"

    def test_complete(self, client):
        record = propose(client)
        approve(client, record["id"])
        client.post(f"/v1/allocations/{record['id']}/activate", json={})
        response = client.post(f"/v1/allocations/{record['id']}/complete", json={})
        assert response.json()["state"] == "completed"


class TestQueryEndpoints:
    """Listing, snapshots and availability."""

    def test_query_by_resource(self, client):
        propose(client)
        propose(client, resource="Z")

        data = client.get("/v1/allocations", params={"resource_id": "X"}).json()
        assert data["count"] == 1
        assert data["snapshot_version"] == 2

    def test_query_needs_a_subject(self, client):
        assert client.get("/v1/allocations").status_code == 422

    def test_query_as_of(self, client):
        record = propose(client)
        approve(client, record["id"])
        version = client.get("/v1/ledger/version").json()["version"]
        client.post(f"/v1/allocations/{record['id']}/cancel", json={})

        past = client.get(
            "/v1/allocations", params={"resource_id": "X", "as_of": version}
        ).json()
        assert past["snapshot_version"] == version
        assert past["allocations"][0]["state"] == "approved"

    def test_availability(self, client):
        record = propose(client)
        approve(client, record["id"])

        response = client.get(
            "/v1/resources/X/availability", params={"start": iso(MON), "end": iso(SAT)}
        )
        data = response.json()
        assert data["peak_committed"] == 60
        assert data["available"] == 40
        assert data["catalog_stale"] is False

    def test_rebuild_index(self, client):
        record = propose(client)
        approve(client, record["id"])
        assert client.post("/v1/index/rebuild").json() == {"entries": 1}


class TestDemandEndpoints:
    """Project demand matching."""

    def demand(self, percentage=40):
        return {
            "id": "SOW-7",
            "category": "engineer",
            "percentage": percentage,
            "start": iso(MON),
            "end": iso(FRI),
        }

    def test_candidates(self, client):
        response = client.post("/v1/demands/candidates", json=self.demand())
        data = response.json()
        assert data["demand_id"] == "SOW-7"
        assert [c["resource_id"] for c in data["candidates"]] == ["X", "Y"]

    def test_propose_for_demand(self, client):
        response = client.post(
            "/v1/demands/propose",
            json={"demand": self.demand(), "resource_id": "Y", "requested_by": "planner"},
        )
        assert response.status_code == 201
        assert response.json()["project_id"] == "SOW-7"

    def test_propose_for_demand_wrong_category(self, client):
        response = client.post(
            "/v1/demands/propose",
            json={"demand": self.demand(), "resource_id": "Z", "requested_by": "planner"},
        )
        assert response.status_code == 422

    def test_plan_places_higher_priority_first(self, client):
        low = {**self.demand(60), "id": "LOW", "priority": 1}
        high = {**self.demand(60), "id": "HIGH", "priority": 5}

        response = client.post("/v1/demands/plan", json={"demands": [low, high]})
        assert response.status_code == 200
        data = response.json()
        assert [(p["demand_id"], p["resource_id"]) for p in data["plans"]] == [
            ("HIGH", "X"),
            ("LOW", None),
        ]
        assert data["unplaced"] == ["LOW"]
        assert client.get("/v1/ledger/version").json()["version"] == 0

    def test_plan_needs_demands(self, client):
        assert client.post("/v1/demands/plan", json={"demands": []}).status_code == 422


class TestCatalogEndpoints:
    """Explicit catalog snapshot refresh."""

    def test_full_refresh(self, client):
        data = client.post("/v1/catalog/refresh").json()
        assert data["resources"] == 4
        assert data["snapshot_version"] == 1
        assert data["refreshed_at"] is not None

    def test_single_resource_refresh(self, client):
        data = client.post("/v1/catalog/refresh", json={"resource_id": "X"}).json()
        assert data == {"resources": 1, "snapshot_version": 0, "refreshed_at": None}


class TestPeriodicJobs:
    """Background loops started by the lifespan."""

    @pytest.mark.asyncio
    async def test_failing_run_does_not_stop_the_loop(self):
        calls = []
        recovered = asyncio.Event()

        async def flaky():
            calls.append(len(calls))
            if len(calls) == 1:
                raise OperationalError("UPDATE allocations", {}, Exception("database is locked"))
            if len(calls) == 2:
                raise CatalogUnavailableError("catalog returned 503")
            recovered.set()

        task = asyncio.create_task(run_periodically("auto_advance", 0, flaky))
        await asyncio.wait_for(recovered.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) >= 3

    def test_lifespan_runs_and_stops_background_jobs(self, tmp_path):
        settings = Settings(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
            log_level="WARNING",
            auto_advance_seconds=3600,
            catalog_refresh_seconds=3600,
        )
        app = create_app(settings, catalog_source=StaticCatalog(default_resources()))
        with TestClient(app) as test_client:
            assert test_client.get("/health").status_code == 200
