"""
Chatline API - Main Application Entry Point
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.db import init_db, async_session_maker
from app.errors import ChatlineError, BadRequest, Unauthorized
from app.api import (
    auth_router,
    ai_router,
    executions_router,
    apps_router,
    billing_router,
)
from app.services.chat_orchestrator import get_chat_orchestrator
from app.services.model_gateway import get_model_gateway
from app.structured_logging import configure_logging, generate_request_id, set_request_context

logger = logging.getLogger(__name__)

# Global start time for uptime tracking
_app_start_time = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    global _app_start_time
    _app_start_time = time.time()

    configure_logging(settings.log_level, settings.log_json)
    logger.info(f"{settings.app_name} starting up")
    await init_db()
    logger.info("Database initialized")

    yield

    # Let in-flight turns settle their transcript and credits
    cancelled = await get_chat_orchestrator().wait_idle(settings.shutdown_grace_seconds)
    if cancelled:
        logger.warning(f"Cancelled {cancelled} turn(s) still running after the grace period")
    await get_model_gateway().aclose()
    logger.info(f"{settings.app_name} shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Streaming multi-model chat with per-user credits and conversation history",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag every log line of a request with one id, echoed as X-Request-ID."""
    request_id = request.headers.get("x-request-id") or generate_request_id()
    set_request_context(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(ChatlineError)
async def chatline_error_handler(request: Request, exc: ChatlineError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = "Malformed request"
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = f"{field}: {first.get('msg')}" if field else first.get("msg", detail)
    error = BadRequest(detail)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=ChatlineError().to_dict())


# Include routers
app.include_router(auth_router)
app.include_router(ai_router)
app.include_router(executions_router)
app.include_router(apps_router)
app.include_router(billing_router)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "status": "healthy",
        "version": "1.0.0",
    }


@app.get("/ping")
async def ping():
    uptime = time.time() - _app_start_time if _app_start_time else 0
    return {"status": "ok", "uptime": round(uptime, 1)}


@app.get("/health")
async def health():
    """Health check with a database probe and uptime."""
    db_status = "connected"
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"error: {e}"

    uptime = time.time() - _app_start_time if _app_start_time else 0

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "uptime": round(uptime, 1),
        "database": db_status,
        "activeTurns": get_chat_orchestrator().active_turns,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
