from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from callgenie.api.routes import router as api_router
from callgenie.core.config import get_settings
from callgenie.core.errors import register_exception_handlers
from callgenie.logging import configure_logging
from callgenie.middleware.correlation_id import CorrelationIdMiddleware
from callgenie.middleware.rate_limit import OutboundCallRateLimitMiddleware
from callgenie.middleware.request_logging import RequestLoggingMiddleware
from callgenie.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if not settings.retell_api_key:
        logger.warning("retell_api_key_missing")
    logger.info("system.started")
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(OutboundCallRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
