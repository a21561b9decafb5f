"""Tests for structured logging context and value rendering."""

from datetime import timedelta

import pytest
import structlog
from conftest import FRI, MON

from ralloc.db.models import AllocationState
from ralloc.logging import (
    add_service,
    bind_context,
    clear_context,
    operation_context,
    render_domain_values,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_context()
    yield
    clear_context()


class TestRenderDomainValues:
    def test_enums_instants_and_durations_become_scalars(self):
        event = render_domain_values(
            None,
            "info",
            {
                "event": "allocation_transitioned",
                "state": AllocationState.APPROVED,
                "start": MON,
                "window": FRI - MON,
                "percentage": 60,
            },
        )
        assert event == {
            "event": "allocation_transitioned",
            "state": "approved",
            "start": "2024-01-01T00:00:00+00:00",
            "window": 4 * 86400.0,
            "percentage": 60,
        }

    def test_service_is_added_once(self):
        assert add_service(None, "info", {"event": "x"})["service"] == "ralloc"
        assert add_service(None, "info", {"service": "other"})["service"] == "other"


class TestOperationContext:
    def test_binds_operation_and_skips_missing_fields(self):
        with operation_context("approve", allocation_id="a1", resource_id=None, actor="bob"):
            assert structlog.contextvars.get_contextvars() == {
                "operation": "approve",
                "allocation_id": "a1",
                "actor": "bob",
            }
        assert structlog.contextvars.get_contextvars() == {}

    def test_restores_request_context_on_exit(self):
        bind_context(request_id="r1", actor="alice")
        with operation_context("amend", actor="bob"):
            assert structlog.contextvars.get_contextvars()["actor"] == "bob"
            with operation_context("approve", allocation_id="a2"):
                assert structlog.contextvars.get_contextvars()["operation"] == "approve"
            assert structlog.contextvars.get_contextvars()["operation"] == "amend"
        assert structlog.contextvars.get_contextvars() == {"request_id": "r1", "actor": "alice"}

    def test_restores_context_when_the_block_raises(self):
        with pytest.raises(RuntimeError):
            with operation_context("cancel", allocation_id="a3"):
                raise RuntimeError("boom")
        assert structlog.contextvars.get_contextvars() == {}


@pytest.mark.asyncio
class TestEngineOperationContext:
    """Engine operations bind their identity around the work they do."""

    async def test_catalog_lookup_runs_inside_the_operation_context(
        self, engine, source, catalog_clock
    ):
        seen = []
        lookup = source.get_resource

        async def recording_lookup(resource_id):
            seen.append(structlog.contextvars.get_contextvars())
            return await lookup(resource_id)

        source.get_resource = recording_lookup
        record = await engine.propose("X", "P1", MON, FRI, 40, "planner")
        catalog_clock.advance(timedelta(minutes=10))
        await engine.approve(record.id, "manager")

        assert seen[0] == {"operation": "propose", "resource_id": "X", "actor": "planner"}
        assert seen[-1] == {"operation": "approve", "allocation_id": record.id, "actor": "manager"}
        assert structlog.contextvars.get_contextvars() == {}
