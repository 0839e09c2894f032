"""Unit tests for environment-driven configuration loading."""

from __future__ import annotations

import pytest

from kubephase.config import load_config


class TestLoadConfig:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in ("WORKERS", "CHUNKING_STRATEGY", "LOG_LEVEL", "SECRET_SYNC_ENABLED", "NAMESPACE"):
            monkeypatch.delenv(f"KUBEPHASE_{var}", raising=False)

        config = load_config()

        assert config.controller.workers == 4
        assert config.controller.namespace == ""
        assert config.slices.chunking_strategy == "Binpack"
        assert config.deployment.revision_history_limit == 10
        assert config.secret_sync.enabled is True
        assert config.log.level == "info"

    def test_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEPHASE_NAMESPACE", "apps")
        monkeypatch.setenv("KUBEPHASE_CHUNKING_STRATEGY", "EachObject")
        monkeypatch.setenv("KUBEPHASE_SECRET_SYNC_ENABLED", "false")
        monkeypatch.setenv("KUBEPHASE_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("KUBEPHASE_SECRET_SYNC_POLL_INTERVAL", "120")

        config = load_config()

        assert config.controller.namespace == "apps"
        assert config.slices.chunking_strategy == "EachObject"
        assert config.secret_sync.enabled is False
        assert config.secret_sync.default_poll_interval == 120
        assert config.log.level == "debug"

    def test_numeric_values_are_clamped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBEPHASE_WORKERS", "100")
        monkeypatch.setenv("KUBEPHASE_SLICE_THRESHOLD_BYTES", "10")
        monkeypatch.setenv("KUBEPHASE_API_PORT", "80")

        config = load_config()

        assert config.controller.workers == 64
        assert config.slices.threshold_bytes == 1_024
        assert config.api.port == 1024

    @pytest.mark.parametrize(
        ("var", "value", "match"),
        [
            ("LOG_LEVEL", "verbose", "Invalid log level"),
            ("CHUNKING_STRATEGY", "Random", "Invalid chunking strategy"),
            ("WORKERS", "many", "invalid literal"),
        ],
    )
    def test_invalid_values_raise(self, monkeypatch: pytest.MonkeyPatch, var: str, value: str, match: str) -> None:
        monkeypatch.setenv(f"KUBEPHASE_{var}", value)
        with pytest.raises(ValueError, match=match):
            load_config()
