"""FastAPI transport for the allocation engine.

The server is a thin adapter: it builds the engine's collaborators from
settings, maps requests onto engine operations and engine errors onto HTTP
status codes. No allocation logic lives here.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from ralloc import __version__
from ralloc.capacity_index import CapacityIndex
from ralloc.catalog import CachedCatalog, HttpResourceCatalog, ResourceCatalog, StaticCatalog
from ralloc.config import Settings, get_settings
from ralloc.db import create_db_engine, create_session_factory, init_db
from ralloc.engine import AllocationEngine
from ralloc.errors import AllocationError, status_code_for
from ralloc.events import (
    EventPublisher,
    InMemoryEventPublisher,
    RetryingEventPublisher,
    WebhookEventPublisher,
)
from ralloc.ledger import AllocationLedger
from ralloc.logging import configure_logging, get_logger
from ralloc.metrics import metrics
from ralloc.middleware import RequestTracingMiddleware
from ralloc.schemas.api import (
    ActorRequest,
    AllocationListResponse,
    AllocationResponse,
    AmendRequest,
    AvailabilityResponse,
    CancelRequest,
    CandidateListResponse,
    CandidateResponse,
    CatalogRefreshRequest,
    CatalogRefreshResponse,
    DemandPlanEntry,
    DemandPlanRequest,
    DemandPlanResponse,
    DemandProposeRequest,
    DemandRequest,
    HistoryResponse,
    LedgerVersionResponse,
    ProposeRequest,
    RebuildResponse,
    RejectRequest,
    TransitionResponse,
)

logger = get_logger(__name__)


def catalog_from_settings(settings: Settings) -> ResourceCatalog:
    """HTTP catalog when a URL is configured, else a static (possibly file-seeded) one."""
    if settings.catalog_url:
        return HttpResourceCatalog(
            settings.catalog_url,
            timeout=settings.catalog_timeout_seconds,
            default_capacity=settings.default_base_capacity,
        )
    if settings.catalog_file:
        return StaticCatalog.from_file(settings.catalog_file, settings.default_base_capacity)
    return StaticCatalog()


def publisher_from_settings(settings: Settings) -> EventPublisher:
    if settings.event_webhook_url:
        return WebhookEventPublisher(settings.event_webhook_url)
    return InMemoryEventPublisher()


async def run_periodically(
    job_name: str,
    period: float,
    job: Callable[[], Awaitable[object]],
) -> None:
    """Run ``job`` every ``period`` seconds until cancelled.

    A failing run is logged with its traceback and the loop carries on; only
    cancellation stops it.
    """
    while True:
        await asyncio.sleep(period)
        try:
            await job()
        except AllocationError as exc:
            logger.warning(f"{job_name}_failed", error=str(exc), code=exc.code)
        except Exception:
            logger.exception(f"{job_name}_failed")


def create_app(
    settings: Settings | None = None,
    catalog_source: ResourceCatalog | None = None,
    event_sink: EventPublisher | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``catalog_source`` and ``event_sink`` override the collaborators that
    would otherwise be built from ``settings``.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(
            json_format=not settings.debug,
            level="DEBUG" if settings.debug else settings.log_level,
        )
        logger.info(
            "server_starting",
            version=__version__,
            host=settings.host,
            port=settings.port,
            debug=settings.debug,
        )

        db_engine = create_db_engine(settings.database_url, echo=settings.debug)
        await init_db(db_engine)
        catalog = CachedCatalog(
            catalog_source or catalog_from_settings(settings),
            staleness=timedelta(seconds=settings.catalog_staleness_seconds),
        )
        publisher = RetryingEventPublisher(
            event_sink or publisher_from_settings(settings),
            max_attempts=settings.event_max_attempts,
            base_delay=settings.event_retry_base_seconds,
        )
        engine = AllocationEngine(
            ledger=AllocationLedger(create_session_factory(db_engine)),
            catalog=catalog,
            index=CapacityIndex(timedelta(hours=settings.bucket_hours)),
            publisher=publisher,
        )
        await engine.rebuild_index()
        await publisher.start()

        background: list[asyncio.Task] = []
        if settings.auto_advance_seconds > 0:
            background.append(
                asyncio.create_task(
                    run_periodically("auto_advance", settings.auto_advance_seconds, engine.advance)
                )
            )
        if settings.catalog_refresh_seconds > 0:
            background.append(
                asyncio.create_task(
                    run_periodically(
                        "catalog_refresh", settings.catalog_refresh_seconds, engine.refresh_catalog
                    )
                )
            )

        app.state.engine = engine
        logger.info("server_ready", database_url=settings.database_url)
        yield

        for task in background:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await publisher.stop()
        await catalog.close()
        await db_engine.dispose()
        logger.info("server_shutdown")

    app = FastAPI(
        title="Resource Allocation Engine",
        description="Capacity-safe allocation of resources to project demands",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.add_middleware(RequestTracingMiddleware)

    @app.exception_handler(AllocationError)
    async def allocation_error_handler(request: Request, exc: AllocationError) -> JSONResponse:
        code = status_code_for(exc)
        logger.info("request_rejected", error=exc.code, status_code=code, detail=str(exc))
        return JSONResponse(
            status_code=code,
            content={"error": exc.code, "detail": str(exc), **exc.details()},
        )

    def get_engine(request: Request) -> AllocationEngine:
        return request.app.state.engine

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    @app.get("/metrics", include_in_schema=False)
    async def get_metrics() -> PlainTextResponse:
        """Return Prometheus-formatted metrics."""
        return PlainTextResponse(
            content=metrics.to_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.get("/metrics/json")
    async def get_metrics_json() -> dict:
        """Return metrics as JSON."""
        return metrics.get_stats()

    # =========================================================================
    # Allocations
    # =========================================================================

    @app.post(
        "/v1/allocations",
        response_model=AllocationResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def propose(
        body: ProposeRequest, engine: AllocationEngine = Depends(get_engine)
    ) -> AllocationResponse:
        """Propose an allocation. Soft conflicts come back as ``warnings``."""
        record = await engine.propose(
            body.resource_id,
            body.project_id,
            body.start,
            body.end,
            body.percentage,
            body.requested_by,
        )
        return AllocationResponse.from_record(record)

    @app.get("/v1/allocations", response_model=AllocationListResponse)
    async def query(
        resource_id: str | None = Query(default=None, description="Filter by resource"),
        project_id: str | None = Query(default=None, description="Filter by project"),
        start: datetime | None = Query(default=None, description="Window start"),
        end: datetime | None = Query(default=None, description="Window end (exclusive)"),
        as_of: int | None = Query(default=None, ge=0, description="Ledger snapshot version"),
        engine: AllocationEngine = Depends(get_engine),
    ) -> AllocationListResponse:
        """Allocations of a resource or project overlapping a window.

        Without ``as_of`` the latest state is read; ``snapshot_version`` is the
        ledger version those rows reflect.
        """
        snapshot, records = await engine.query_with_version(
            resource_id=resource_id,
            project_id=project_id,
            start=start,
            end=end,
            as_of=as_of,
        )
        return AllocationListResponse(
            allocations=[AllocationResponse.from_record(r) for r in records],
            count=len(records),
            snapshot_version=snapshot,
        )

    @app.get("/v1/allocations/{allocation_id}", response_model=AllocationResponse)
    async def get_allocation(
        allocation_id: str, engine: AllocationEngine = Depends(get_engine)
    ) -> AllocationResponse:
        return AllocationResponse.from_record(await engine.get(allocation_id))

    @app.get("/v1/allocations/{allocation_id}/history", response_model=HistoryResponse)
    async def get_history(
        allocation_id: str, engine: AllocationEngine = Depends(get_engine)
    ) -> HistoryResponse:
        """Audit trail: every transition with actor, timestamp and prior state."""
        rows = await engine.history(allocation_id)
        return HistoryResponse(
            allocation_id=allocation_id,
            transitions=[TransitionResponse.from_row(r) for r in rows],
        )

    @app.post("/v1/allocations/{allocation_id}/approve", response_model=AllocationResponse)
    async def approve(
        allocation_id: str,
        body: ActorRequest,
        engine: AllocationEngine = Depends(get_engine),
    ) -> AllocationResponse:
        record = await engine.approve(allocation_id, body.actor, body.expected_version)
        return AllocationResponse.from_record(record)

    @app.post("/v1/allocations/{allocation_id}/reject", response_model=AllocationResponse)
    async def reject(
        allocation_id: str,
        body: RejectRequest,
        engine: AllocationEngine = Depends(get_engine),
    ) -> AllocationResponse:
        record = await engine.reject(
            allocation_id, body.reason, body.actor, body.expected_version
        )
        return AllocationResponse.from_record(record)

    @app.post("/v1/allocations/{allocation_id}/amend", response_model=AllocationResponse)
    async def amend(
        allocation_id: str,
        body: AmendRequest,
        engine: AllocationEngine = Depends(get_engine),
    ) -> AllocationResponse:
        record = await engine.amend(
            allocation_id,
            body.start,
            body.end,
            body.percentage,
            body.actor,
            body.expected_version,
        )
        return AllocationResponse.from_record(record)

    @app.post("/v1/allocations/{allocation_id}/cancel", response_model=AllocationResponse)
    async def cancel(
        allocation_id: str,
        body: CancelRequest,
        engine: AllocationEngine = Depends(get_engine),
    ) -> AllocationResponse:
        record = await engine.cancel(
            allocation_id, body.actor, body.reason, body.expected_version
        )
        return AllocationResponse.from_record(record)

    @app.post("/v1/allocations/{allocation_id}/activate", response_model=AllocationResponse)
    async def activate(
        allocation_id: str,
        body: ActorRequest,
        engine: AllocationEngine = Depends(get_engine),
    ) -> AllocationResponse:
        record = await engine.activate(allocation_id, body.actor, body.expected_version)
        return AllocationResponse.from_record(record)

    @app.post("/v1/allocations/{allocation_id}/complete", response_model=AllocationResponse)
    async def complete(
        allocation_id: str,
        body: ActorRequest,
        engine: AllocationEngine = Depends(get_engine),
    ) -> AllocationResponse:
        record = await engine.complete(allocation_id, body.actor, body.expected_version)
        return AllocationResponse.from_record(record)

    # =========================================================================
    # Resources and demands
    # =========================================================================

    @app.get("/v1/resources/{resource_id}/availability", response_model=AvailabilityResponse)
    async def availability(
        resource_id: str,
        start: datetime = Query(..., description="Window start"),
        end: datetime = Query(..., description="Window end (exclusive)"),
        engine: AllocationEngine = Depends(get_engine),
    ) -> AvailabilityResponse:
        view = await engine.availability(resource_id, start, end)
        return AvailabilityResponse.from_availability(view)

    @app.post("/v1/demands/candidates", response_model=CandidateListResponse)
    async def candidates(
        body: DemandRequest, engine: AllocationEngine = Depends(get_engine)
    ) -> CandidateListResponse:
        """Resources of the demand's category that can take it without overcommitting."""
        found = await engine.find_candidates(body.to_demand())
        return CandidateListResponse(
            demand_id=body.id,
            candidates=[CandidateResponse.from_candidate(c) for c in found],
        )

    @app.post(
        "/v1/demands/propose",
        response_model=AllocationResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def propose_for_demand(
        body: DemandProposeRequest, engine: AllocationEngine = Depends(get_engine)
    ) -> AllocationResponse:
        record = await engine.propose_for_demand(
            body.demand.to_demand(), body.resource_id, body.requested_by
        )
        return AllocationResponse.from_record(record)

    @app.post("/v1/demands/plan", response_model=DemandPlanResponse)
    async def plan_demands(
        body: DemandPlanRequest, engine: AllocationEngine = Depends(get_engine)
    ) -> DemandPlanResponse:
        """Place competing demands by priority without writing anything."""
        plans = await engine.plan_demands([d.to_demand() for d in body.demands])
        return DemandPlanResponse(
            plans=[DemandPlanEntry.from_plan(p) for p in plans],
            unplaced=[p.demand.id for p in plans if not p.matched],
        )

    @app.post("/v1/catalog/refresh", response_model=CatalogRefreshResponse)
    async def refresh_catalog(
        body: CatalogRefreshRequest | None = None,
        engine: AllocationEngine = Depends(get_engine),
    ) -> CatalogRefreshResponse:
        """Reload the catalog snapshot now instead of waiting for it to go stale."""
        count = await engine.refresh_catalog(body.resource_id if body else None)
        return CatalogRefreshResponse(
            resources=count,
            snapshot_version=engine.catalog.snapshot_version,
            refreshed_at=engine.catalog.refreshed_at,
        )

    # =========================================================================
    # Ledger maintenance
    # =========================================================================

    @app.post("/v1/index/rebuild", response_model=RebuildResponse)
    async def rebuild_index(engine: AllocationEngine = Depends(get_engine)) -> RebuildResponse:
        return RebuildResponse(entries=await engine.rebuild_index())

    @app.get("/v1/ledger/version", response_model=LedgerVersionResponse)
    async def ledger_version(
        engine: AllocationEngine = Depends(get_engine),
    ) -> LedgerVersionResponse:
        return LedgerVersionResponse(version=await engine.ledger_version())

    return app
