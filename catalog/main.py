"""FastAPI app, lifespan wiring, scheduled sync, and HTTP routes.

The lifespan builds the collaborators once (upstream client, store, cache,
reconciler, query service) and keeps them on ``app.state``. Routes:

- GET  /            -> redirect to Swagger UI (/docs)
- GET  /healthz     -> liveness
- GET  /healthcheck -> store + upstream status
- GET  /characters  -> filtered characters (cache -> store -> upstream search)
- POST /sync        -> run a full sync now
- GET  /metrics     -> Prometheus exposition
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import List, NamedTuple, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from . import db, metrics
from .cache import MemoryCache, RedisCache, build_cache
from .clients import UpstreamClient
from .crud import SqlCharacterStore
from .db import init_db, wait_for_db
from .filters import CharacterFilter
from .logging_config import configure_logging
from .schemas import CharacterOut, HealthcheckOut, ProblemDetail, SyncReportOut
from .service import QueryService
from .settings import Settings, get_settings
from .sync import SyncReconciler

configure_logging()
log = logging.getLogger(__name__)


class Components(NamedTuple):
    client: UpstreamClient
    store: SqlCharacterStore
    cache: MemoryCache | RedisCache
    reconciler: SyncReconciler
    query_service: QueryService


def build_components(settings: Settings) -> Components:
    """Construct every collaborator explicitly from settings.

    Raises:
        ValueError: If the upstream URL is missing or malformed.
    """
    client = UpstreamClient(settings.UPSTREAM_URL, timeout=settings.REQUEST_TIMEOUT)
    store = SqlCharacterStore(db.SessionLocal)
    cache = build_cache(settings)
    reconciler = SyncReconciler(
        store, client, full_sync_limit=settings.FULL_SYNC_LIMIT
    )
    query_service = QueryService(
        store,
        cache,
        reconciler,
        ttl_seconds=settings.CACHE_TTL_SECONDS,
        search_max_pages=settings.SEARCH_MAX_PAGES,
    )
    return Components(client, store, cache, reconciler, query_service)


async def run_scheduled_sync(
    reconciler: SyncReconciler, interval: float, stop_event: asyncio.Event
) -> None:
    """Call ``sync_all`` every ``interval`` seconds until ``stop_event`` is set.

    The first tick fires one interval after start (startup seeding covers t=0).
    A failing tick is logged and the loop keeps going; the next tick is the retry.
    """
    log.info("scheduler.start interval=%.3fs", interval)
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass
        try:
            report = await reconciler.sync_all()
            log.info("scheduler.tick %s", report._asdict())
        except Exception as exc:
            log.warning("scheduler.tick_failed error=%r", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config, wait for the DB, init schema, seed, start the scheduler."""
    settings = get_settings()
    components = build_components(settings)

    try:
        await wait_for_db()
    except Exception as e:
        log.error("startup.db_wait_failed error=%r", e)
        raise
    await init_db()
    log.info("startup.db_init complete")

    app.state.components = components

    if settings.SEED_ON_STARTUP:
        n = await components.reconciler.seed_if_empty()
        log.info("startup.seed created=%d", n)

    stop_event = asyncio.Event()
    task = None
    if settings.SYNC_ENABLED:
        task = asyncio.create_task(
            run_scheduled_sync(
                components.reconciler, settings.SYNC_INTERVAL_SECONDS, stop_event
            )
        )

    try:
        yield
    finally:
        stop_event.set()
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await components.client.aclose()
        if isinstance(components.cache, RedisCache):
            await components.cache.close()


app = FastAPI(title="Character Catalog", version="1.0.0", lifespan=lifespan)
metrics.install(app)


# ---------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------

_STATUS_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def _problem(
    status: int,
    title: str | None = None,
    detail: str | None = None,
    instance: str | None = None,
) -> JSONResponse:
    """Return an RFC7807 problem+json response."""
    body = {
        "type": "about:blank",
        "title": title or _STATUS_TITLES.get(status, "Error"),
        "status": status,
        "detail": detail,
        "instance": instance,
    }
    return JSONResponse(
        status_code=status, content=body, media_type="application/problem+json"
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_req: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else None
    return _problem(status=exc.status_code, detail=detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_req: Request, exc: RequestValidationError):
    msg = exc.errors()[0]["msg"] if exc.errors() else "Validation error"
    return _problem(status=422, detail=msg)


@app.exception_handler(SQLAlchemyError)
async def store_exception_handler(req: Request, exc: SQLAlchemyError):
    log.error("route.store_error path=%s error=%r", req.url.path, exc)
    return _problem(
        status=503, detail="Character store unavailable", instance=req.url.path
    )


_problem_resp = {
    "application/problem+json": {"schema": ProblemDetail.model_json_schema()},
}


# ---------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------


def get_components(request: Request) -> Components:
    return request.app.state.components


def get_query_service(c: Components = Depends(get_components)) -> QueryService:
    return c.query_service


def get_reconciler(c: Components = Depends(get_components)) -> SyncReconciler:
    return c.reconciler


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------


@app.get("/", include_in_schema=False)
async def root():
    """Redirect the root path to the interactive API docs (/docs)."""
    return RedirectResponse(url=app.docs_url or "/docs", status_code=307)


@app.get("/healthz", include_in_schema=False)
async def healthz():
    """In-process liveness; touches neither the DB nor the network."""
    return {"status": "ok"}


@app.get("/healthcheck", response_model=HealthcheckOut)
async def healthcheck(c: Components = Depends(get_components)):
    """Deep health check for upstream API and database."""
    upstream_ok = await c.client.probe()

    db_ok = True
    total = 0
    try:
        total = await c.store.count()
    except Exception as exc:
        db_ok = False
        log.debug("route.healthcheck.db_error error=%r", exc)
    status = "ok" if (upstream_ok and db_ok) else "degraded"
    log.info(
        "route.healthcheck status=%s upstream_ok=%s db_ok=%s character_count=%d",
        status,
        upstream_ok,
        db_ok,
        total,
    )
    return {
        "status": status,
        "upstream_ok": upstream_ok,
        "db_ok": db_ok,
        "character_count": total,
    }


@app.get(
    "/characters",
    response_model=List[CharacterOut],
    responses={
        422: {"content": _problem_resp, "model": ProblemDetail},
        503: {"content": _problem_resp, "model": ProblemDetail},
    },
)
async def characters(
    name: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    species: Optional[str] = Query(None),
    gender: Optional[str] = Query(None),
    origin: Optional[str] = Query(None),
    service: QueryService = Depends(get_query_service),
):
    """Return characters matching every given field.

    ``name`` is a case-insensitive substring match; the others are exact.
    Results are not paginated and their order is not guaranteed.
    """
    flt = CharacterFilter(
        name=name, status=status, species=species, gender=gender, origin=origin
    )
    return await service.query(flt)


@app.post("/sync", response_model=SyncReportOut)
async def sync_now(reconciler: SyncReconciler = Depends(get_reconciler)):
    """Run a full sync immediately (same path as the scheduler)."""
    report = await reconciler.sync_all()
    return report._asdict()
