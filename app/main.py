from fastapi import Depends, FastAPI, Request, Response
from app.config import settings
import importlib
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from app.logging_setup import setup_logging, TRACE_ID_CTX
import uuid
import logging
import sentry_sdk
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from app.db.session import get_session
from app.exceptions import register_exception_handlers
from app.metrics import update_pending_holds
from app.redis_client import redis_client

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)

# initialize logging and Sentry
setup_logging(settings.LOG_LEVEL)
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN)
    app.add_middleware(SentryAsgiMiddleware)

register_exception_handlers(app)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    TRACE_ID_CTX.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response

# List of module names to include as routers
MODULES = [
    "bookings",
    "payments",
    "admin",
]


for mod in MODULES:
    pkg = importlib.import_module(f"app.modules.{mod}.router")
    app.include_router(pkg.router, prefix=f"/{mod}", tags=[mod])


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/metrics")
async def metrics(db: AsyncSession = Depends(get_session)):
    # update dynamic gauges before scraping
    try:
        await update_pending_holds(db)
    except Exception:
        logger.warning("could not refresh pending holds gauge", exc_info=True)
    content = generate_latest()
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    # readiness: redis backs webhook replay protection and sandbox payments
    try:
        await redis_client.ping()
    except Exception:
        return Response(status_code=503, content="redis unavailable")
    return {"status": "ready"}
