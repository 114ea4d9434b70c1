"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # Database
    database_url: str = Field(..., description="Async database URL (postgresql+asyncpg or sqlite+aiosqlite)")
    database_pool_size: int = Field(default=20, description="Connection pool size (ignored for SQLite)")
    database_max_overflow: int = Field(default=10, description="Extra connections above the pool size")

    # Redis
    redis_url: str = Field(default="", description="Redis connection URL; empty disables caching")

    # Platform (identity, profiles, privacy graph, push)
    platform_api_url: str = Field(default="http://localhost:8080", description="Platform API base URL")
    platform_api_key: str = Field(default="", description="Platform API key")
    platform_api_timeout: int = Field(default=10, description="Platform API request timeout in seconds")

    # Security
    jwt_secret: str = Field(..., min_length=32, description="JWT secret key (min 32 chars)")
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_expiration_hours: int = Field(default=24, description="JWT expiration time in hours")

    # Messaging policy
    elevated_roles: str = Field(
        default="super_admin",
        description="Comma-separated roles that bypass the first-contact permission gate"
    )
    messaging_exempt_user_ids: str = Field(
        default="",
        description="Comma-separated user ids that always accept first contact"
    )
    resurface_hidden_conversations: bool = Field(
        default=True,
        description="Unhide a conversation for the recipient when a new message arrives"
    )
    max_message_length: int = Field(default=4000, description="Maximum message text length")

    # Realtime
    typing_quiet_interval_seconds: float = Field(default=2.0, description="Typing indicator quiet interval")
    subscription_queue_size: int = Field(default=256, description="Per-view change feed buffer size")
    resync_max_attempts: int = Field(default=3, description="Snapshot resync attempts after a lost subscription")
    resync_retry_delay_seconds: float = Field(default=1.0, description="Delay between resync attempts")

    # CORS
    allowed_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins"
    )

    # Alibaba Cloud OSS
    oss_access_key_id: str = Field(default="", description="Alibaba Cloud OSS Access Key ID")
    oss_access_key_secret: str = Field(default="", description="Alibaba Cloud OSS Access Key Secret")
    oss_bucket_name: str = Field(default="", description="OSS bucket name")
    oss_endpoint: str = Field(default="oss-cn-hangzhou.aliyuncs.com", description="OSS endpoint")

    # File Upload
    max_upload_size: int = Field(default=5242880, description="Max media upload size in bytes (5MB)")
    allowed_file_types: str = Field(
        default="image/jpeg,image/png,image/gif,image/webp,video/mp4,video/webm",
        description="Comma-separated list of allowed MIME types"
    )

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True, description="Enable API rate limiting")
    rate_limit_per_minute: int = Field(default=100, description="API rate limit per minute per client")
    rate_limit_send_per_minute: int = Field(default=30, description="Message sends per minute per client")

    # WebSocket
    ws_ping_interval: int = Field(default=25, description="Socket.IO ping interval in seconds")
    ws_ping_timeout: int = Field(default=60, description="Socket.IO ping timeout in seconds")

    # Cache TTL (in seconds)
    cache_profile_ttl: int = Field(default=600, description="Profile cache TTL in seconds")
    send_nonce_ttl: int = Field(default=300, description="How long a client nonce deduplicates HTTP sends")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")

    @field_validator("allowed_origins", "allowed_file_types", "elevated_roles", "messaging_exempt_user_ids")
    @classmethod
    def parse_comma_list(cls, v: str) -> List[str]:
        """Parse a comma-separated string into a list."""
        return [item.strip() for item in v.split(",") if item.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


# Global settings instance
settings = Settings()
