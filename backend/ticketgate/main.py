"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ticketgate.core import otel
from ticketgate.core.config import settings
from ticketgate.core.logging import setup_logging
from ticketgate.core.security import get_client_ip
from ticketgate.db.redis import get_redis_client
from ticketgate.db.session import engine, init_db
from ticketgate.services.indexer_service import EventIndexer

# Import routers
from ticketgate.api import entry, events, indexer, monitoring, purchases

setup_logging()

logger = logging.getLogger(__name__)
api_access_logger = logging.getLogger("api_access")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = otel.initialize_otel()
    if otel_initialized:
        if otel.setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        otel.instrument_requests()
        otel.instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    app.state.indexer = EventIndexer()
    if settings.INDEXER_ENABLED:
        logger.info("Starting event indexer...")
        await app.state.indexer.start()
    else:
        logger.info("Event indexer disabled (INDEXER_ENABLED=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await app.state.indexer.stop()


# Create FastAPI app
app = FastAPI(
    title="Ticketgate Backend",
    description="Ticket ledger indexer and gate entry admission",
    version="1.0.0",
    lifespan=lifespan
)

if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    otel.instrument_fastapi(app)

# CORS middleware
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000"
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(entry.router)
app.include_router(purchases.router)
app.include_router(events.router)
app.include_router(indexer.router)
app.include_router(monitoring.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """Log every API call with client and outcome"""
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        if request.url.path not in ("/metrics", "/health"):
            api_access_logger.info(
                f"{request.method} {request.url.path} - Status: {status_code} - IP: {get_client_ip(request)}"
            )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
