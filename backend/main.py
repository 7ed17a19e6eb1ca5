import logging
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import settings
from database.connection import get_database
from services.call_registry import get_call_registry
from services.errors import TelemedicineError
from api.dependencies import get_coordinator
from api.routes import sessions_router, signaling_router
from utils.helpers import setup_logging, get_system_info

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "session_not_found": 404,
    "issue_not_found": 404,
    "unauthorized": 403,
    "not_pending": 409,
    "invalid_transition": 409,
    "already_in_call": 409,
    "session_closed": 409,
    "media_access_denied": 422,
    "negotiation_failed": 422,
    "infrastructure_error": 503,
}

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    try:
        if settings.storage_backend != "memory":
            await get_database()
            logger.info("✅ Database connected successfully")

        await get_coordinator()
        logger.info("✅ Session coordinator ready")

        registry = await get_call_registry()
        await registry.start_registry()
        logger.info("✅ Call registry started")

        logger.info("🚀 Telemedicine Session API started successfully")

    except Exception as e:
        logger.error(f"❌ Startup failed: {e}")
        raise

    yield

    # Shutdown
    try:
        registry = await get_call_registry()
        await registry.stop_registry()
        logger.info("✅ Call registry stopped")

        if settings.storage_backend != "memory":
            db = await get_database()
            await db.disconnect()
            logger.info("✅ Database disconnected")

        logger.info("🛑 Telemedicine Session API shutdown complete")

    except Exception as e:
        logger.warning(f"⚠️ Shutdown warning: {e}")

# Create FastAPI application
app = FastAPI(
    title="Telemedicine Session API",
    description="Session lifecycle, review workflow and real-time call coordination for remote consultations",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(TelemedicineError)
async def telemedicine_error_handler(request: Request, exc: TelemedicineError):
    """Typed session errors become structured responses"""
    return JSONResponse(status_code=ERROR_STATUS.get(exc.code, 400), content=exc.to_dict())

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "invalid_request", "message": str(exc)})

# Include routers
app.include_router(sessions_router)
app.include_router(signaling_router)

@app.get("/")
async def root():
    """Root endpoint with system information"""
    return {
        "message": "Telemedicine Session API",
        "status": "active",
        "system_info": get_system_info(),
        "features": [
            "Session request review",
            "Peer-to-peer call signaling relay",
            "Ordered session chat log",
            "Write-once clinical output",
            "Finalize events for billing and records"
        ]
    }

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    try:
        services = {"api": "active", "signaling": "ready"}
        if settings.storage_backend != "memory":
            db = await get_database()
            await db.ping()
            services["database"] = "connected"
        else:
            services["database"] = "in-memory"

        return {
            "status": "healthy",
            "timestamp": get_system_info()["timestamp"],
            "services": services
        }
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "timestamp": get_system_info()["timestamp"],
                "error": str(e)
            }
        )

@app.get("/api/system-info")
async def get_api_system_info():
    """Get system information and the effective call configuration"""
    return {
        "system": get_system_info(),
        "configuration": {
            "default_session_duration_minutes": settings.default_session_duration_minutes,
            "max_chat_message_length": settings.max_chat_message_length,
            "max_concurrent_calls": settings.max_concurrent_calls,
            "capture_timeout_seconds": settings.capture_timeout_seconds,
            "negotiation_timeout_seconds": settings.negotiation_timeout_seconds,
            "ice_servers": settings.ice_servers,
            "database_pool_size": settings.db_connection_pool_size
        }
    }

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8001,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
