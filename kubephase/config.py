"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from kubephase.models.config import (
    APIConfig,
    ControllerConfig,
    DeploymentConfig,
    KubePhaseConfig,
    LogConfig,
    SecretSyncConfig,
    SliceConfig,
)

_CHUNKING_STRATEGIES = {"NoOp", "EachObject", "Binpack"}


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBEPHASE_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float) -> float:
    return float(_env(key, str(default)))


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_chunking_strategy(value: str) -> str:
    if value not in _CHUNKING_STRATEGIES:
        raise ValueError(f"Invalid chunking strategy: {value}. Must be one of {sorted(_CHUNKING_STRATEGIES)}")
    return value


def load_config() -> KubePhaseConfig:
    """Load configuration from KUBEPHASE_* environment variables."""
    return KubePhaseConfig(
        controller=ControllerConfig(
            namespace=_env("NAMESPACE", ""),
            workers=_env_int("WORKERS", 4, min_val=1, max_val=64),
            conflict_retries=_env_int("CONFLICT_RETRIES", 5, min_val=1, max_val=20),
            max_backoff_seconds=_env_float("MAX_BACKOFF_SECONDS", 300.0),
        ),
        slices=SliceConfig(
            # Kept well below the 1.5 MiB etcd request limit.
            threshold_bytes=_env_int("SLICE_THRESHOLD_BYTES", 800_000, min_val=1_024, max_val=1_000_000),
            chunking_strategy=_validate_chunking_strategy(_env("CHUNKING_STRATEGY", "Binpack")),
            max_collisions=_env_int("MAX_SLICE_COLLISIONS", 5, min_val=1, max_val=20),
        ),
        deployment=DeploymentConfig(
            revision_history_limit=_env_int("REVISION_HISTORY_LIMIT", 10, min_val=0, max_val=100),
        ),
        secret_sync=SecretSyncConfig(
            enabled=_env_bool("SECRET_SYNC_ENABLED", True),
            default_poll_interval=_env_int("SECRET_SYNC_POLL_INTERVAL", 60, min_val=5),
        ),
        api=APIConfig(
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
