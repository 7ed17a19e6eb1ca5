import logging
import sys
import platform
import uuid
from datetime import datetime
from typing import Dict, Any, Optional
from config.settings import settings

# Third-party loggers kept above the application level
QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "motor": logging.WARNING,
    "pymongo": logging.WARNING,
    "websockets": logging.WARNING,
}

def setup_logging(level: Optional[str] = None) -> None:
    """Configure application logging on stdout"""
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper()))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name, logger_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(logger_level)

    logging.info("Logging configured successfully")

def get_system_info() -> Dict[str, Any]:
    """Get system information for health checks"""
    return {
        "platform": platform.platform(),
        "python_version": platform.python_version(),
        "timestamp": datetime.now().isoformat(),
        "application": "Telemedicine Session Service",
        "version": "1.0.0",
        "environment": "development" if settings.debug else "production",
        "storage_backend": settings.storage_backend
    }

def validate_session_id(session_id: str) -> bool:
    """Session ids are UUIDs"""
    try:
        uuid.UUID(session_id)
    except ValueError:
        return False
    return True

def format_duration(seconds: float) -> str:
    """Format duration in seconds to human readable format"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"
