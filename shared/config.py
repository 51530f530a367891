"""Shared configuration utilities."""

import os
from typing import Optional


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def _get_float(key: str, default: float) -> float:
    raw = get_env(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be a number, got {raw!r}")


def get_queue_database_url() -> str:
    """Get the offline share queue database URL from environment."""
    return get_env(
        "SHARE_QUEUE_DATABASE_URL",
        "sqlite:///data/share_queue.db",
        required=False
    )


def get_aws_config() -> dict:
    """Get AWS (or S3-compatible) storage configuration from environment."""
    return {
        "region": get_env("AWS_REGION", "us-east-1"),
        "s3_bucket": get_env("AWS_S3_BUCKET", "share-inbox"),
        "access_key_id": get_env("AWS_ACCESS_KEY_ID"),
        "secret_access_key": get_env("AWS_SECRET_ACCESS_KEY"),
        "endpoint_url": get_env("AWS_S3_ENDPOINT_URL") or None,
    }


def get_ingest_config() -> dict:
    """Get upstream ingestion API configuration from environment."""
    return {
        "url": get_env("INGEST_API_URL", "http://localhost:8787/api/share"),
        "health_url": get_env("INGEST_HEALTH_URL", "http://localhost:8787/api/health"),
        "timeout": _get_float("INGEST_TIMEOUT_SECONDS", 30.0),
    }


def get_sync_config() -> dict:
    """Get queue drain scheduling configuration from environment."""
    return {
        "interval": _get_float("SHARE_SYNC_INTERVAL_SECONDS", 300.0),
        "connectivity_poll": _get_float("CONNECTIVITY_POLL_SECONDS", 15.0),
        "stale_after_hours": _get_float("SHARE_QUEUE_STALE_AFTER_HOURS", 72.0),
    }


def get_redirect_root() -> str:
    """Get the application root the share target redirects back to."""
    return get_env("SHARE_REDIRECT_ROOT", "/")


def get_empty_file_policy() -> str:
    """
    Get the policy for shared files that turn out to hold zero bytes.

    ``metadata`` keeps a metadata-only record, ``skip`` drops the file.
    """
    policy = get_env("EMPTY_FILE_POLICY", "metadata").strip().lower()
    if policy not in ("metadata", "skip"):
        raise ValueError(f"EMPTY_FILE_POLICY must be 'metadata' or 'skip', got {policy!r}")
    return policy
