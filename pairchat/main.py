"""
FastAPI Application Entry Point.
Initializes the FastAPI app with middleware, CORS, and routes, then wraps it
with the Socket.IO server.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from pairchat.api.v1 import admin, conversations, gifs, messages
from pairchat.config import settings
from pairchat.core.cache import cache
from pairchat.core.database import AsyncSessionLocal, engine
from pairchat.core.exceptions import MessagingError
from pairchat.core.logging_config import setup_logging
from pairchat.core.platform_client import platform_client
from pairchat.core.rate_limit import limiter
from pairchat.core.websocket import connection_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    setup_logging()
    await cache.connect()
    logger.info(f"Messaging server starting ({settings.environment})")
    yield
    # Shutdown
    await cache.disconnect()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title="Pairchat Messaging Server",
    description="Private one-to-one messaging with realtime delivery",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Add rate limiter state and error handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# CORS Middleware
# Socket.IO handles CORS for its own endpoint (cors_allowed_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health Check Endpoints
@app.get("/health", tags=["Health"])
async def health_check():
    """Basic health check endpoint."""
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "environment": settings.environment,
        }
    )


@app.get("/health/ready", tags=["Health"])
async def readiness_check():
    """
    Readiness check endpoint.
    Verifies database, cache and platform connectivity.
    """
    checks = {
        "database": False,
        "redis": "not_configured" if not settings.redis_url else cache.redis is not None,
        "platform": False,
    }

    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            checks["database"] = True
    except SQLAlchemyError as e:
        logger.warning(f"Readiness: database unreachable: {e}")

    checks["platform"] = await platform_client.health_check()

    redis_ok = checks["redis"] == "not_configured" or checks["redis"] is True
    all_healthy = checks["database"] and redis_ok and checks["platform"]
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={
            "status": "ready" if all_healthy else "not ready",
            "checks": checks,
        }
    )


@app.get("/health/websocket", tags=["Health"])
async def websocket_health_check():
    """Socket.IO endpoint information for debugging."""
    return JSONResponse(
        status_code=200,
        content={
            "status": "configured",
            "websocket_endpoint": "/socket.io/",
            "active_connections": len(connection_manager.connections),
            "active_users": len(connection_manager.user_sessions),
            "open_views": len(connection_manager.views),
        }
    )


# Include API routers
app.include_router(
    conversations.router,
    prefix="/api/v1/conversations",
    tags=["Conversations"]
)

app.include_router(
    messages.router,
    prefix="/api/v1/messages",
    tags=["Messages"]
)

app.include_router(
    gifs.router,
    prefix="/api/v1/gifs",
    tags=["Gifs"]
)

app.include_router(
    admin.router,
    prefix="/api/v1/admin",
    tags=["Admin"]
)

# Save reference to FastAPI app (for testing)
fastapi_app = app

# Socket.IO handles /socket.io/*, everything else falls through to FastAPI
app = connection_manager.get_asgi_app(fastapi_app)
