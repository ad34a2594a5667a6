"""Application configuration settings."""
from pathlib import Path
from pydantic_settings import BaseSettings
from pydantic import model_validator
from typing import List

# Get the server directory path
SERVER_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase
    SUPABASE_URL: str
    SUPABASE_KEY: str
    ATTACHMENTS_BUCKET: str = "chat-attachments"

    # Authentication (tokens are issued by the identity service, we only verify)
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS: explicit list of allowed origins
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8080",
    ]

    # Messaging limits
    MAX_MESSAGE_LENGTH: int = 10000
    MAX_ATTACHMENT_BYTES: int = 10 * 1024 * 1024
    REPLY_SNIPPET_LENGTH: int = 120

    # Ephemeral conversations
    EPHEMERAL_RETENTION_HOURS: int = 48
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 300

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        for name in (
            "MAX_MESSAGE_LENGTH",
            "MAX_ATTACHMENT_BYTES",
            "REPLY_SNIPPET_LENGTH",
            "EPHEMERAL_RETENTION_HOURS",
            "EXPIRY_SWEEP_INTERVAL_SECONDS",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive integer")
        return self

    class Config:
        env_file = str(SERVER_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Global settings instance
settings = Settings()
