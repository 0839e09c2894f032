"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ControllerConfig:
    """Controller runtime configuration."""

    namespace: str = ""  # empty watches all namespaces
    workers: int = 4
    conflict_retries: int = 5
    max_backoff_seconds: float = 300.0


@dataclass
class SliceConfig:
    """ObjectSlice chunking configuration."""

    threshold_bytes: int = 800_000
    chunking_strategy: str = "Binpack"
    max_collisions: int = 5


@dataclass
class DeploymentConfig:
    """ObjectDeployment controller configuration."""

    revision_history_limit: int = 10


@dataclass
class SecretSyncConfig:
    """SecretSync controller configuration."""

    enabled: bool = True
    default_poll_interval: int = 60


@dataclass
class APIConfig:
    """Health/metrics HTTP API configuration."""

    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class KubePhaseConfig:
    """Top-level kubephase configuration."""

    controller: ControllerConfig = field(default_factory=ControllerConfig)
    slices: SliceConfig = field(default_factory=SliceConfig)
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    secret_sync: SecretSyncConfig = field(default_factory=SecretSyncConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
