import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_scheduler.api import deps
from clinic_scheduler.api.routes import appointments, availability, maintenance, slots
from clinic_scheduler.core.config import _ENV_FILE, settings
from clinic_scheduler.core.exceptions import InfrastructureError, SchedulingError

if not settings.is_production:
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)


async def _run_no_show_sweep() -> None:
    """One sweep pass; failures are logged so the loop keeps running."""
    try:
        n = await deps.scheduler.run_no_show_sweep(grace_minutes=settings.no_show_grace_minutes)
        if n:
            logger.info("No-show sweep: marked %d appointment(s)", n)
    except Exception as e:
        logger.exception("No-show sweep failed: %s", e)


async def _sweep_loop() -> None:
    while True:
        await _run_no_show_sweep()
        await asyncio.sleep(settings.no_show_sweep_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    tasks = [asyncio.create_task(deps.scheduler.events.run())]
    if settings.no_show_sweep_enabled:
        logger.info(
            "No-show sweep every %ds, grace %d min",
            settings.no_show_sweep_interval_seconds, settings.no_show_grace_minutes,
        )
        tasks.append(asyncio.create_task(_sweep_loop()))
    else:
        logger.warning("No-show sweep disabled; run it via POST /api/v1/maintenance/no-show-sweep")
    yield
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Clinic Scheduler API",
    description="Doctor availability, appointment booking and lifecycle",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(appointments.router, prefix="/api/v1")
app.include_router(slots.router, prefix="/api/v1")
app.include_router(availability.router, prefix="/api/v1")
app.include_router(maintenance.router, prefix="/api/v1")


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


@app.exception_handler(SchedulingError)
@app.exception_handler(InfrastructureError)
async def scheduling_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Business-rule violations and exhausted retries keep their own status code."""
    if isinstance(exc, InfrastructureError):
        logger.error("Infrastructure failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
        headers=_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return actual error in JSON; include CORS so 500 responses are not blocked by browser."""
    origin = request.headers.get("origin")
    headers = _cors_headers(origin)
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )
    logger.exception("Unhandled exception: %s", exc)
    detail = f"{type(exc).__name__}: {str(exc)}"
    return JSONResponse(
        status_code=500,
        content={"detail": detail},
        headers=headers,
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
