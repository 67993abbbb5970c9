"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, tracing and the
messaging engine.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

from prometheus_fastapi_instrumentator import Instrumentator

from duochat.api.endpoints import conversations_router, uploads_router, users_router, websocket_router
from duochat.api.health import SERVICE_NAME, SERVICE_VERSION, router as health_router
from duochat.api.websocket_manager import heartbeat_monitor
from duochat.core.config import settings
from duochat.core.logging_config import configure_logging
from duochat.db.database import engine as db_engine, init_db, seed_db
from duochat.services.chat_engine import ChatEngine
from duochat.services.kafka_producer import close_kafka_producer
from duochat.services.push_notifier import PushNotifier

configure_logging(service_name=SERVICE_NAME, level=settings.log_level, enable_json=settings.log_json)

logger = logging.getLogger(__name__)


def setup_tracing() -> TracerProvider:
    """
    Configure OpenTelemetry tracing.

    Spans are exported over OTLP/HTTP when ``otlp_endpoint`` is set;
    otherwise they are only used for log correlation.
    """
    resource = Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": SERVICE_VERSION,
    })
    tracer_provider = TracerProvider(resource=resource)

    if settings.otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))
        logger.info(f"OpenTelemetry tracing initialized with OTLP exporter ({settings.otlp_endpoint})")
    else:
        logger.info("OpenTelemetry tracing initialized without exporter")

    trace.set_tracer_provider(tracer_provider)
    return tracer_provider


tracer_provider = setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting duochat...")
    init_db()
    if settings.seed_demo_data:
        seed_db()

    push_notifier = PushNotifier() if settings.push_enabled else None
    app.state.engine = ChatEngine(push_notifier=push_notifier)

    heartbeat_task = asyncio.create_task(heartbeat_monitor(
        app.state.engine.registry,
        interval_seconds=settings.heartbeat_interval_seconds,
        timeout_seconds=settings.heartbeat_timeout_seconds
    ))
    logger.info("WebSocket heartbeat monitor started")

    yield

    # Shutdown
    logger.info("Shutting down duochat...")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        logger.info("Heartbeat monitor stopped")

    await app.state.engine.registry.wait_idle()
    await asyncio.to_thread(close_kafka_producer)


# Create FastAPI application
app = FastAPI(
    title="duochat",
    description="Real-time two-party messaging engine",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Instrument FastAPI and SQLAlchemy with OpenTelemetry
FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=db_engine)

# Exposes /metrics endpoint with HTTP request metrics plus the engine's own
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each request.
    The request_id is included in logs for request tracing.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid4())
        request.state.request_id = request_id

        logger.info(
            f"[{request_id}] {request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}"
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(f"[{request_id}] Response: {response.status_code}")
        return response


# Add middlewares
app.add_middleware(RequestIDMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": "duochat messaging engine",
        "version": SERVICE_VERSION,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
        "websocket": "/ws"
    }


# Register endpoint routers
app.include_router(health_router)
app.include_router(conversations_router, prefix="/v1/conversations", tags=["Conversations"])
app.include_router(users_router, prefix="/v1/users", tags=["Users"])
app.include_router(uploads_router, prefix="/v1/uploads", tags=["Uploads"])
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "duochat.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
