"""Tests for environment-driven configuration."""

import os

import pytest

from livepreview.config import Config, ConfigError


@pytest.fixture
def isolated_environ(monkeypatch):
    """Give each test its own copy of the process environment."""
    monkeypatch.setattr(os, "environ", dict(os.environ))
    for name in list(os.environ):
        if name.startswith("PREVIEW_") or name in ("GITHUB_TOKEN", "LOG_LEVEL"):
            del os.environ[name]


class TestConfig:
    def test_defaults(self, tmp_path, isolated_environ):
        config = Config(env_file=tmp_path / ".env")
        assert config.container_port == 3000
        assert config.port_range_start == 8100
        assert config.port_range_end == 8200
        assert config.install_timeout == 300
        assert config.full_toolchain_start_timeout > config.start_timeout
        assert config.github_token is None
        assert config.log_level == "INFO"

    def test_reads_env_file(self, tmp_path, isolated_environ):
        env_file = tmp_path / ".env"
        env_file.write_text("PREVIEW_HOST=preview.example\nGITHUB_TOKEN=ghp_abc\nLOG_LEVEL=debug\n")
        config = Config(env_file=env_file)
        assert config.preview_host == "preview.example"
        assert config.github_token == "ghp_abc"
        assert config.log_level == "DEBUG"

    def test_invalid_number_is_reported(self, tmp_path, isolated_environ):
        os.environ["PREVIEW_INSTALL_TIMEOUT"] = "soon"
        with pytest.raises(ConfigError, match="PREVIEW_INSTALL_TIMEOUT must be a number"):
            Config(env_file=tmp_path / ".env")

    def test_port_range_must_be_ordered(self, tmp_path, isolated_environ):
        os.environ["PREVIEW_PORT_RANGE_START"] = "9000"
        os.environ["PREVIEW_PORT_RANGE_END"] = "8000"
        with pytest.raises(ConfigError, match="PREVIEW_PORT_RANGE_START"):
            Config(env_file=tmp_path / ".env")

    def test_all_errors_reported_together(self, tmp_path, isolated_environ):
        os.environ["PREVIEW_START_TIMEOUT"] = "0"
        os.environ["PREVIEW_OUTPUT_BUFFER_LINES"] = "many"
        with pytest.raises(ConfigError) as exc_info:
            Config(env_file=tmp_path / ".env")
        message = str(exc_info.value)
        assert "PREVIEW_START_TIMEOUT must be positive" in message
        assert "PREVIEW_OUTPUT_BUFFER_LINES must be an integer" in message
