"""Tests for the resource catalog adapters and snapshot cache."""

import json
from datetime import timedelta

import httpx
import pytest
from conftest import FakeClock

from ralloc.catalog import CachedCatalog, HttpResourceCatalog, Resource, StaticCatalog
from ralloc.errors import CatalogUnavailableError, ValidationError


def catalog_transport(handler_state: dict) -> httpx.MockTransport:
    """Mock catalog service.

    ``handler_state["down"]`` makes it return 503, ``handler_state["status"]``
    forces any other status code.
    """

    resources = {
        "X": {"id": "X", "category": "engineer", "base_capacity": 80},
        "Z": {"id": "Z", "category": "designer"},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        handler_state["calls"] = handler_state.get("calls", 0) + 1
        if handler_state.get("down"):
            return httpx.Response(503)
        if "status" in handler_state:
            return httpx.Response(handler_state["status"], text="refused")
        if request.url.path == "/v1/resources":
            category = request.url.params.get("category")
            items = [r for r in resources.values() if not category or r["category"] == category]
            return httpx.Response(200, json={"resources": items})
        resource_id = request.url.path.rsplit("/", 1)[-1]
        if resource_id not in resources:
            return httpx.Response(404)
        return httpx.Response(200, json=resources[resource_id])

    return httpx.MockTransport(handler)


class TestResource:
    def test_from_dict_applies_default_capacity(self):
        resource = Resource.from_dict({"id": 7, "category": "qa"}, default_capacity=80)
        assert resource == Resource(id="7", category="qa", base_capacity=80)

    def test_to_dict(self):
        assert Resource(id="X", category="engineer").to_dict() == {
            "id": "X",
            "category": "engineer",
            "base_capacity": 100,
            "active": True,
        }


@pytest.mark.asyncio
class TestStaticCatalog:
    """In-process catalog."""

    async def test_lookup_and_category_listing(self):
        catalog = StaticCatalog(
            [Resource(id="B", category="eng"), Resource(id="A", category="eng"),
             Resource(id="C", category="ops")]
        )
        assert (await catalog.get_resource("A")).category == "eng"
        assert await catalog.get_resource("missing") is None
        assert [r.id for r in await catalog.list_resources("eng")] == ["A", "B"]

    async def test_unavailable(self):
        catalog = StaticCatalog()
        catalog.available = False
        with pytest.raises(CatalogUnavailableError):
            await catalog.get_resource("A")

    async def test_from_file(self, tmp_path):
        path = tmp_path / "resources.json"
        path.write_text(
            json.dumps(
                [
                    {"id": "X", "category": "engineer"},
                    {"id": "Y", "category": "engineer", "base_capacity": 50, "active": False},
                ]
            )
        )
        catalog = StaticCatalog.from_file(path, default_capacity=90)

        assert (await catalog.get_resource("X")).base_capacity == 90
        assert (await catalog.get_resource("Y")).active is False


@pytest.mark.asyncio
class TestHttpResourceCatalog:
    """Catalog reached over HTTP."""

    async def test_get_resource(self):
        catalog = HttpResourceCatalog("http://catalog", transport=catalog_transport({}))
        resource = await catalog.get_resource("X")
        assert resource == Resource(id="X", category="engineer", base_capacity=80)
        assert (await catalog.get_resource("Z")).base_capacity == 100
        await catalog.close()

    async def test_unknown_resource_is_none(self):
        catalog = HttpResourceCatalog("http://catalog", transport=catalog_transport({}))
        assert await catalog.get_resource("nope") is None
        await catalog.close()

    async def test_list_by_category(self):
        catalog = HttpResourceCatalog("http://catalog/", transport=catalog_transport({}))
        assert [r.id for r in await catalog.list_resources("designer")] == ["Z"]
        await catalog.close()

    async def test_server_error_is_unavailable(self):
        catalog = HttpResourceCatalog(
            "http://catalog", transport=catalog_transport({"down": True})
        )
        with pytest.raises(CatalogUnavailableError):
            await catalog.get_resource("X")
        await catalog.close()

    async def test_transport_error_is_unavailable(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        catalog = HttpResourceCatalog("http://catalog", transport=httpx.MockTransport(refuse))
        with pytest.raises(CatalogUnavailableError, match="unreachable"):
            await catalog.list_resources()
        await catalog.close()

    async def test_forbidden_is_unavailable(self):
        catalog = HttpResourceCatalog(
            "http://catalog", transport=catalog_transport({"status": 403})
        )
        with pytest.raises(CatalogUnavailableError, match="403"):
            await catalog.get_resource("X")
        with pytest.raises(CatalogUnavailableError, match="403"):
            await catalog.list_resources()
        await catalog.close()

    async def test_bad_request_is_a_validation_error(self):
        catalog = HttpResourceCatalog(
            "http://catalog", transport=catalog_transport({"status": 400})
        )
        with pytest.raises(ValidationError, match="400"):
            await catalog.get_resource("X")
        await catalog.close()

    async def test_missing_listing_endpoint_is_unavailable(self):
        catalog = HttpResourceCatalog(
            "http://catalog", transport=catalog_transport({"status": 404})
        )
        assert await catalog.get_resource("X") is None
        with pytest.raises(CatalogUnavailableError, match="404"):
            await catalog.list_resources()
        await catalog.close()


@pytest.mark.asyncio
class TestCachedCatalog:
    """Snapshot cache with a staleness window."""

    @pytest.fixture
    def state(self):
        return {}

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cached(self, state, clock):
        source = HttpResourceCatalog("http://catalog", transport=catalog_transport(state))
        return CachedCatalog(source, staleness=timedelta(minutes=5), clock=clock)

    async def test_fresh_entry_is_served_from_cache(self, cached, state, clock):
        await cached.get_resource("X")
        clock.advance(timedelta(minutes=4))
        await cached.get_resource("X")
        assert state["calls"] == 1

    async def test_stale_entry_is_refetched(self, cached, state, clock):
        await cached.get_resource("X")
        clock.advance(timedelta(minutes=6))
        await cached.get_resource("X")
        assert state["calls"] == 2

    async def test_strict_get_refuses_stale_snapshot(self, cached, state, clock):
        await cached.get_resource("X")
        state["down"] = True
        clock.advance(timedelta(minutes=6))
        with pytest.raises(CatalogUnavailableError):
            await cached.get_resource("X")

    async def test_lookup_serves_stale_snapshot(self, cached, state, clock):
        await cached.get_resource("X")
        state["down"] = True
        clock.advance(timedelta(minutes=6))

        resource, stale = await cached.lookup("X")
        assert resource.base_capacity == 80
        assert stale is True

    async def test_lookup_without_snapshot_raises(self, cached, state):
        state["down"] = True
        with pytest.raises(CatalogUnavailableError):
            await cached.lookup("X")

    async def test_refresh_bumps_snapshot_version(self, cached, state):
        assert await cached.refresh() == 2
        assert cached.snapshot_version == 1
        calls = state["calls"]
        await cached.get_resource("Z")
        assert state["calls"] == calls

    async def test_full_refresh_drops_delisted_resources(self, clock):
        source = StaticCatalog([Resource(id="A", category="eng"), Resource(id="B", category="eng")])
        cached = CachedCatalog(source, clock=clock)
        await cached.refresh()
        first = cached.refreshed_at

        source._resources.pop("B")
        clock.advance(timedelta(minutes=1))
        assert await cached.refresh() == 1

        assert cached.refreshed_at == first + timedelta(minutes=1)
        assert cached.snapshot_version == 2
        source.available = False
        with pytest.raises(CatalogUnavailableError):
            await cached.lookup("B")

    async def test_failed_refresh_keeps_previous_snapshot(self, cached, state, clock):
        await cached.refresh()
        state["down"] = True
        with pytest.raises(CatalogUnavailableError):
            await cached.refresh()

        assert cached.snapshot_version == 1
        clock.advance(timedelta(minutes=6))
        resource, stale = await cached.lookup("X")
        assert resource.base_capacity == 80
        assert stale is True

    async def test_single_resource_refresh_refetches_fresh_entry(self, cached, state):
        await cached.get_resource("X")
        assert await cached.refresh("X") == 1
        assert await cached.refresh("nope") == 0
        assert state["calls"] == 3
        assert cached.snapshot_version == 0
