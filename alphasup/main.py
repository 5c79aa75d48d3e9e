from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from alphasup.config import settings
import importlib
import logging
import traceback
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text
from alphasup.logging_setup import setup_logging, TRACE_ID_CTX
import uuid
import sentry_sdk
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware
from alphasup.errors import AppError
from alphasup.metrics import update_queue_depth
from alphasup.db.session import async_session
from alphasup import redis_client as redis_module


logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)

# initialize logging and Sentry
setup_logging(settings.LOG_LEVEL)
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    app.add_middleware(SentryAsgiMiddleware)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    TRACE_ID_CTX.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


def _error_body(code: str, message: str, details=None, exc: Exception = None) -> dict:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    if exc is not None and not settings.is_production:
        error["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {"success": False, "error": error}


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, extra={"code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message, exc.details, exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=_error_body("VALIDATION_ERROR", "Validation failed", details))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("INTERNAL_ERROR", "Internal server error", exc=exc))


# List of module names to include as routers
MODULES = [
    "bookings",
    "payments",
    "admin",
]


for mod in MODULES:
    pkg = importlib.import_module(f"alphasup.modules.{mod}.router")
    app.include_router(pkg.router, prefix=f"/{mod}", tags=[mod])


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/metrics")
async def metrics():
    await update_queue_depth()
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


async def _check_redis() -> None:
    await redis_module.redis_client.ping()


async def _check_database() -> None:
    async with async_session() as session:
        await session.execute(text("SELECT 1"))


@app.get("/ready")
async def ready():
    checks = {}
    for name, probe in (("redis", _check_redis), ("database", _check_database)):
        try:
            await probe()
            checks[name] = "ok"
        except Exception as exc:
            logger.warning("Readiness check %s failed: %s", name, exc)
            checks[name] = "unavailable"
    if any(state != "ok" for state in checks.values()):
        return JSONResponse(status_code=503, content={"status": "unavailable", "checks": checks})
    return {"status": "ready", "checks": checks}
