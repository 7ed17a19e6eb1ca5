from typing import Dict, List
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Database
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "telemedicine"
    db_connection_pool_size: int = 10
    storage_backend: str = "mongo"  # mongo | memory

    # Application
    debug: bool = False
    log_level: str = "INFO"

    # Auth (token -> "role:identity")
    auth_tokens: Dict[str, str] = {}

    # Sessions
    default_session_duration_minutes: int = 30
    max_chat_message_length: int = 4000

    # Media
    ice_servers: List[str] = ["stun:stun.l.google.com:19302"]
    capture_timeout_seconds: float = 30.0
    negotiation_timeout_seconds: float = 120.0

    # Call registry
    max_concurrent_calls: int = 50
    call_registry_cleanup_interval: int = 60
    call_registry_retention_minutes: int = 60

    class Config:
        env_file = ".env"
        case_sensitive = False

# Global settings instance
settings = Settings()
