"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./duochat.db"

    # At-rest message encryption (AES-256, 64 hex characters)
    message_secret_key: str = "0" * 64

    # Credential verification
    jwt_secret_key: str = "changeme-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Kafka Configuration (push notification jobs)
    kafka_bootstrap_servers: str = "localhost:9092"
    push_topic: str = "push_notifications"
    push_enabled: bool = True
    push_timeout_seconds: float = 15.0

    # MinIO Configuration
    minio_endpoint: str = "localhost:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket: str = "chat-uploads"
    minio_secure: bool = False
    minio_public_url: Optional[str] = None
    upload_max_bytes: int = 10 * 1024 * 1024

    # Messaging engine
    history_limit: int = 50
    max_sessions_per_user: int = 5
    heartbeat_interval_seconds: int = 30
    heartbeat_timeout_seconds: int = 40

    # Tracing
    otlp_endpoint: Optional[str] = None

    # Application Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True
    seed_demo_data: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("message_secret_key")
    @classmethod
    def validate_message_secret_key(cls, value: str) -> str:
        """The message key must decode to exactly 32 bytes."""
        try:
            key = bytes.fromhex(value)
        except ValueError as e:
            raise ValueError("message_secret_key must be hex encoded") from e
        if len(key) != 32:
            raise ValueError("message_secret_key must be 32 bytes (64 hex characters)")
        return value


# Global settings instance
settings = Settings()
