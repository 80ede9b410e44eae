from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Secrets(BaseSettings):
    """Secrets configuration, loaded from the environment or a secrets management service."""

    model_config = SettingsConfigDict(
        env_prefix="AVATAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    jwt_secret: str = Field(default="change-me", description="Signing secret for service JWT validation.")
    s3_access_key_id: Optional[str] = Field(default=None, description="Object store access key (application id).")
    s3_secret_access_key: Optional[str] = Field(default=None, description="Object store secret (application key).")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Secrets":
        return cls()


class Settings(BaseSettings):
    """Centralised runtime configuration for the avatar ingest service."""

    model_config = SettingsConfigDict(
        env_prefix="AVATAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Avatar Ingest API"
    environment: str = Field(default="development", description="Deployment environment label.")
    version: str = Field(default="0.1.0", description="API version for metadata and OpenAPI.")
    log_level: str = Field(default="info")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./avatars.db",
        description="SQLAlchemy compatible DSN.",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for background jobs.",
    )

    base_url: str = Field(
        default="http://localhost:3000/",
        description="Public prefix prepended to object keys to form stored URLs.",
    )
    storage_backend: Literal["local", "s3"] = Field(default="local", description="Active storage implementation.")
    local_storage_base_path: Path = Field(
        default_factory=lambda: Path("objects"),
        description="Root directory for the local object store.",
    )
    s3_bucket: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_region: str = Field(default="us-east-1")

    storage_max_attempts: int = Field(default=4, ge=1, description="Attempts per object write before giving up.")
    storage_retry_initial_delay_s: float = Field(default=0.5, ge=0, description="Delay before the first retry.")
    storage_retry_backoff_base: float = Field(default=2.0, ge=1, description="Backoff multiplier between retries.")
    storage_retry_max_delay_s: float = Field(default=10.0, ge=0)
    catalog_max_attempts: int = Field(default=3, ge=1, description="Attempts per catalog insert before giving up.")

    max_source_dimension: int = Field(default=5000, ge=1, description="Sources wider/taller than this are rejected.")
    max_source_bytes: int = Field(default=25_000_000, ge=1, description="Sources larger than this are rejected.")
    max_source_frames: int = Field(default=1000, ge=1, description="Animations with more frames are rejected.")
    max_animation_pixels: int = Field(
        default=400_000_000, ge=1, description="Ceiling on width x height x frames for animated sources."
    )
    max_file_size: int = Field(default=1_000_000, ge=1, description="Byte ceiling for stored objects.")
    avatar_max_dimension: int = Field(default=512, ge=1)
    banner_max_dimension: int = Field(default=1024, ge=1)
    output_format: Literal["webp", "png", "jpeg", "gif"] = Field(default="webp")
    output_quality: int = Field(default=90, ge=1, le=100)
    min_output_quality: int = Field(default=50, ge=1, le=100)
    quality_step: int = Field(default=10, ge=1)
    resize_step: float = Field(default=0.75, gt=0, lt=1, description="Scale factor applied per shrink attempt.")
    min_dimension: int = Field(default=64, ge=1, description="Floor for the longer side when shrinking to fit.")

    cdn_hosts: tuple[str, ...] = Field(
        default=("cdn.discordapp.com", "media.discordapp.net"),
        description="Upstream hosts accepted by /pull.",
    )
    fetch_timeout_s: float = Field(default=3.0, gt=0)
    fetch_max_bytes: int = Field(default=4_000_000, ge=1, description="Largest upstream payload accepted by /pull.")

    job_queue_backend: Literal["immediate", "inline", "rq"] = Field(
        default="immediate",
        description="Backend for migration jobs (inline executes inline; rq schedules via Redis).",
    )
    job_max_retries: int = Field(default=3, description="Maximum retry attempts for failed jobs.")
    migrate_worker_count: int = Field(default=0, ge=0, description="Default partition count for drain-queue.")

    jwt_algorithm: str = Field(default="HS256", description="Algorithm used for JWT tokens.")
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    secrets: Secrets = Field(default_factory=Secrets, description="Holds sensitive configuration.")

    @property
    def environment_lower(self) -> str:
        return self.environment.lower()

    @property
    def normalized_job_backend(self) -> str:
        if self.job_queue_backend == "inline":
            return "immediate"
        return self.job_queue_backend

    @property
    def normalized_base_url(self) -> str:
        return self.base_url if self.base_url.endswith("/") else f"{self.base_url}/"


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "AVATAR_ENV": "AVATAR_ENVIRONMENT",
        "AVATAR_DB": "AVATAR_DATABASE_URL",
        "AVATAR_DB_URL": "AVATAR_DATABASE_URL",
        "AVATAR_JOB_BACKEND": "AVATAR_JOB_QUEUE_BACKEND",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value:
            os.environ[target] = value

    settings = Settings()

    secrets = Secrets.from_settings(settings)

    if settings.environment == "production" and secrets.jwt_secret == "change-me":
        raise ValueError("Production environment must have a non-default JWT secret.")
    if settings.storage_backend == "s3" and not settings.s3_bucket:
        raise ValueError("S3 storage backend requires AVATAR_S3_BUCKET.")

    settings.secrets = secrets
    return settings


__all__ = ["Settings", "Secrets", "get_settings"]
