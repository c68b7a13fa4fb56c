"""
Centralized settings for the Civic Issue Reporter backend.

Provides a lightweight wrapper around environment variables (with `.env`
support for local development) so the rest of the codebase can import a single
`get_settings()` helper when configuration is needed. Environment variables
always win over the `.env` file so tests can force an isolated database.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional
import os

from dotenv import dotenv_values


@dataclass(frozen=True)
class Settings:
    """Immutable view of application configuration."""

    # General
    environment: str
    allowed_hosts: tuple[str, ...]

    # Database
    database_url: str

    # Identity
    jwt_secret: Optional[str]
    jwt_access_minutes: int
    role_cache_ttl_seconds: float

    # Workflow
    strict_transitions: bool

    # Blob storage
    storage_provider: str
    local_storage_dir: str
    s3_bucket: str
    s3_region: str
    s3_endpoint: Optional[str]
    s3_access_key_id: Optional[str]
    s3_secret_access_key: Optional[str]
    s3_presign_expiry_get: int

    # Observability
    sentry_dsn: Optional[str]
    metrics_namespace: str


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_lookup(key: str, env: dict[str, str], default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key) or env.get(key) or default


@lru_cache()
def get_settings() -> Settings:
    """Load settings once per process."""

    env_path = Path(__file__).resolve().parents[2] / ".env"
    env_file = dotenv_values(str(env_path)) if env_path.exists() else {}

    default_storage = str(Path(__file__).resolve().parents[1] / "storage")

    return Settings(
        environment=_env_lookup("APP_ENV", env_file, "development"),
        allowed_hosts=tuple(
            h.strip() for h in _env_lookup("ALLOWED_HOSTS", env_file, "*").split(",") if h.strip()
        ),
        database_url=_env_lookup("DATABASE_URL", env_file, "sqlite+aiosqlite:///./civicfix.db"),
        jwt_secret=_env_lookup("JWT_SECRET", env_file),
        jwt_access_minutes=int(_env_lookup("JWT_ACCESS_MINUTES", env_file, "60")),
        role_cache_ttl_seconds=float(_env_lookup("ROLE_CACHE_TTL_SECONDS", env_file, "300")),
        strict_transitions=_as_bool(_env_lookup("WORKFLOW_STRICT_TRANSITIONS", env_file, "false")),
        storage_provider=_env_lookup("STORAGE_PROVIDER", env_file, "local").lower(),
        local_storage_dir=_env_lookup("LOCAL_STORAGE_DIR", env_file, default_storage),
        s3_bucket=_env_lookup("S3_BUCKET", env_file, "civic-report-photos"),
        s3_region=_env_lookup("S3_REGION", env_file, "us-east-1"),
        s3_endpoint=_env_lookup("S3_ENDPOINT", env_file) or _env_lookup("S3_ENDPOINT_URL", env_file),
        s3_access_key_id=_env_lookup("S3_ACCESS_KEY_ID", env_file) or _env_lookup("S3_ACCESS_KEY", env_file),
        s3_secret_access_key=_env_lookup("S3_SECRET_ACCESS_KEY", env_file) or _env_lookup("S3_SECRET_KEY", env_file),
        s3_presign_expiry_get=int(_env_lookup("S3_PRESIGN_EXPIRY_SECONDS_GET", env_file, "3600")),
        sentry_dsn=_env_lookup("SENTRY_DSN", env_file),
        metrics_namespace=_env_lookup("METRICS_NAMESPACE", env_file, "civicfix"),
    )


__all__ = ["Settings", "get_settings"]
