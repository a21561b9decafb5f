"""Resource catalog adapter.

The catalog is an external system of record. The engine only reads it and
keeps a snapshot that is trusted for a configurable staleness window.

Usage:
    source = HttpResourceCatalog("http://catalog.internal", timeout=5.0)
    catalog = CachedCatalog(source, staleness=timedelta(minutes=5))

    resource = await catalog.get_resource("r-42")          # strict
    resource, stale = await catalog.lookup("r-42")         # may serve stale
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx

from ralloc.errors import CatalogUnavailableError, ValidationError
from ralloc.logging import get_logger
from ralloc.timeutil import to_utc, utc_now

logger = get_logger(__name__)

DEFAULT_BASE_CAPACITY = 100


@dataclass(frozen=True)
class Resource:
    """A capacity-bearing entity as seen in the catalog."""

    id: str
    category: str
    base_capacity: int = DEFAULT_BASE_CAPACITY
    active: bool = True

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], default_capacity: int = DEFAULT_BASE_CAPACITY
    ) -> Resource:
        return cls(
            id=str(data["id"]),
            category=str(data.get("category", "")),
            base_capacity=int(data.get("base_capacity", default_capacity)),
            active=bool(data.get("active", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "base_capacity": self.base_capacity,
            "active": self.active,
        }


@dataclass(frozen=True)
class ProjectDemand:
    """Capacity requested by a statement of work. Owned upstream, read-only here."""

    id: str
    category: str
    percentage: int
    start: datetime
    end: datetime
    priority: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))


class ResourceCatalog(ABC):
    """Read-only source of resources."""

    @abstractmethod
    async def get_resource(self, resource_id: str) -> Resource | None:
        """Return the resource or None when the catalog does not know it.

        Raises:
            CatalogUnavailableError: the catalog could not be reached.
        """

    @abstractmethod
    async def list_resources(self, category: str | None = None) -> list[Resource]:
        """List resources, optionally restricted to one category."""

    async def close(self) -> None:
        """Release any connections held by the catalog."""


class StaticCatalog(ResourceCatalog):
    """In-process catalog, seeded from code or a JSON file."""

    def __init__(self, resources: Iterable[Resource] = ()) -> None:
        self._resources = {r.id: r for r in resources}
        self.available = True

    @classmethod
    def from_file(
        cls, path: str | Path, default_capacity: int = DEFAULT_BASE_CAPACITY
    ) -> StaticCatalog:
        """Load a JSON list of ``{"id", "category", "base_capacity", "active"}`` objects."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(Resource.from_dict(item, default_capacity) for item in data)

    def upsert(self, resource: Resource) -> None:
        self._resources[resource.id] = resource

    def _check_available(self) -> None:
        if not self.available:
            raise CatalogUnavailableError("static catalog marked unavailable")

    async def get_resource(self, resource_id: str) -> Resource | None:
        self._check_available()
        return self._resources.get(resource_id)

    async def list_resources(self, category: str | None = None) -> list[Resource]:
        self._check_available()
        return sorted(
            (r for r in self._resources.values() if category is None or r.category == category),
            key=lambda r: r.id,
        )


class HttpResourceCatalog(ResourceCatalog):
    """Catalog served over HTTP.

    Expects ``GET /v1/resources/{id}`` and ``GET /v1/resources?category=...``
    returning the resource JSON shape of ``Resource.to_dict``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        default_capacity: int = DEFAULT_BASE_CAPACITY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_capacity = default_capacity
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(
        self,
        path: str,
        params: dict[str, str] | None = None,
        missing_ok: bool = False,
    ) -> httpx.Response:
        """GET ``path``; every failure surfaces as an engine error.

        Raises:
            ValidationError: the catalog refused the request as malformed (400/422).
            CatalogUnavailableError: transport failure, 5xx or any other 4xx.
                A 404 is returned to the caller when ``missing_ok`` is set.
        """
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            logger.warning("catalog_request_failed", path=path, error=str(exc))
            raise CatalogUnavailableError(f"catalog unreachable: {exc}") from exc

        code = response.status_code
        if code < 400 or (code == 404 and missing_ok):
            return response
        if code in (400, 422):
            logger.info("catalog_request_rejected", path=path, status_code=code)
            raise ValidationError(f"catalog rejected {path}: {code} {response.text[:200]}")
        if code >= 500:
            logger.warning("catalog_server_error", path=path, status_code=code)
        else:
            logger.warning("catalog_client_error", path=path, status_code=code)
        raise CatalogUnavailableError(f"catalog returned {code} for {path}")

    async def get_resource(self, resource_id: str) -> Resource | None:
        response = await self._get(f"/v1/resources/{resource_id}", missing_ok=True)
        if response.status_code == 404:
            return None
        return Resource.from_dict(response.json(), self.default_capacity)

    async def list_resources(self, category: str | None = None) -> list[Resource]:
        params = {"category": category} if category else None
        response = await self._get("/v1/resources", params=params)
        payload = response.json()
        items = payload.get("resources", []) if isinstance(payload, dict) else payload
        return [Resource.from_dict(item, self.default_capacity) for item in items]


@dataclass
class _CachedEntry:
    resource: Resource | None
    fetched_at: datetime


class CachedCatalog:
    """Snapshot cache in front of a ``ResourceCatalog``.

    ``get_resource`` is strict: it refuses to answer from a snapshot older
    than ``staleness`` when the source is unreachable. ``lookup`` serves the
    last-known entry instead and reports it as stale.
    """

    def __init__(
        self,
        source: ResourceCatalog,
        staleness: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.source = source
        self.staleness = staleness
        self._clock = clock
        self._entries: dict[str, _CachedEntry] = {}
        self.refreshed_at: datetime | None = None
        self.snapshot_version = 0

    def _fresh(self, entry: _CachedEntry) -> bool:
        return self._clock() - entry.fetched_at <= self.staleness

    async def _fetch(self, resource_id: str) -> Resource | None:
        resource = await self.source.get_resource(resource_id)
        self._entries[resource_id] = _CachedEntry(resource, self._clock())
        return resource

    async def get_resource(self, resource_id: str) -> Resource | None:
        """Fresh resource snapshot.

        Raises:
            CatalogUnavailableError: the source is down and the cached entry
                (if any) is older than the staleness window.
        """
        entry = self._entries.get(resource_id)
        if entry is not None and self._fresh(entry):
            return entry.resource
        return await self._fetch(resource_id)

    async def lookup(self, resource_id: str) -> tuple[Resource | None, bool]:
        """Resource plus a staleness flag; falls back to the last-known snapshot."""
        try:
            return await self.get_resource(resource_id), False
        except CatalogUnavailableError:
            entry = self._entries.get(resource_id)
            if entry is None:
                raise
            logger.warning(
                "catalog_serving_stale",
                resource_id=resource_id,
                fetched_at=entry.fetched_at.isoformat(),
            )
            return entry.resource, True

    async def list_resources(self, category: str | None = None) -> list[Resource]:
        """List through the source and refresh the snapshot of every listed resource."""
        resources = await self.source.list_resources(category)
        now = self._clock()
        for resource in resources:
            self._entries[resource.id] = _CachedEntry(resource, now)
        return resources

    async def refresh(self, resource_id: str | None = None) -> int:
        """Reload one resource, or replace the whole snapshot.

        A full refresh drops resources the source no longer lists. On failure
        the previous snapshot is kept untouched. Returns the number of
        resources reloaded.
        """
        if resource_id is not None:
            resource = await self._fetch(resource_id)
            logger.info(
                "catalog_entry_refreshed", resource_id=resource_id, found=resource is not None
            )
            return 0 if resource is None else 1

        resources = await self.source.list_resources()
        now = self._clock()
        self._entries = {r.id: _CachedEntry(r, now) for r in resources}
        self.refreshed_at = now
        self.snapshot_version += 1
        logger.info(
            "catalog_refreshed",
            resources=len(resources),
            snapshot_version=self.snapshot_version,
        )
        return len(resources)

    async def close(self) -> None:
        await self.source.close()
