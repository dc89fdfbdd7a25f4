"""
Order Pipeline — FastAPI application entrypoint
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from orderflow.api import health, orders, payments
from orderflow.core.config import get_settings
from orderflow.core.errors import PipelineError
from orderflow.db.database import Base, engine
from orderflow.db.store import StoreError
from orderflow.middleware.idempotency import IdempotencyMiddleware
from orderflow.services.container import build_services
from orderflow.tasks.notification_tasks import send_order_notification

settings = get_settings()
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

STORE_ERROR_STATUS = {
    StoreError.NOT_FOUND: 404,
    StoreError.DUPLICATE_KEY: 409,
    StoreError.PERMISSION_DENIED: 403,
    StoreError.CONSTRAINT: 400,
    StoreError.UNAVAILABLE: 503,
}


def _enqueue_notification(order_id: str, event: str) -> None:
    send_order_notification.delay(order_id, event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    # tests install their own container before startup
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings, engine, enqueue_notification=_enqueue_notification)
    logger.info("%s %s started", settings.SERVICE_NAME, settings.SERVICE_VERSION)
    yield
    await app.state.services.aclose()
    await engine.dispose()


app = FastAPI(
    title="Order Pipeline",
    description="Order lifecycle, payment confirmation and customer notifications for the counter.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(IdempotencyMiddleware)

if settings.METRICS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(health.router)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({"detail": exc.message, **exc.payload}),
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    status_code = STORE_ERROR_STATUS.get(exc.code, 500)
    logger.error("%s %s store error [%s]: %s", request.method, request.url.path, exc.code, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})


@app.get("/")
async def root():
    return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}
