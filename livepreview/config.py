"""
Configuration module for loading and validating environment variables.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _int_env(name: str, default: int, errors: List[str]) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{name} must be an integer (got {raw!r})")
        return default


def _float_env(name: str, default: float, errors: List[str]) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        errors.append(f"{name} must be a number (got {raw!r})")
        return default


class Config:
    """Application configuration loaded from environment variables."""

    def __init__(self, env_file: Optional[Path] = None):
        # Load .env file from project root
        env_path = env_file or Path(__file__).parent.parent / ".env"
        load_dotenv(dotenv_path=env_path)

        errors: List[str] = []

        # Repository access
        self.github_token = os.getenv("GITHUB_TOKEN") or None
        self.github_api_url = os.getenv("GITHUB_API_URL", "https://api.github.com")

        # Primary sandbox (Docker)
        self.sandbox_image = os.getenv("PREVIEW_SANDBOX_IMAGE", "node:18-slim")
        self.container_port = _int_env("PREVIEW_CONTAINER_PORT", 3000, errors)
        self.port_range_start = _int_env("PREVIEW_PORT_RANGE_START", 8100, errors)
        self.port_range_end = _int_env("PREVIEW_PORT_RANGE_END", 8200, errors)
        self.memory_limit = os.getenv("PREVIEW_MEMORY_LIMIT", "1g")
        self.cpu_limit = _float_env("PREVIEW_CPU_LIMIT", 1.0, errors)
        self.preview_host = os.getenv("PREVIEW_HOST", "localhost")

        # Phase budgets (seconds)
        self.install_timeout = _float_env("PREVIEW_INSTALL_TIMEOUT", 300, errors)
        self.start_timeout = _float_env("PREVIEW_START_TIMEOUT", 120, errors)
        self.full_toolchain_start_timeout = _float_env(
            "PREVIEW_FULL_TOOLCHAIN_START_TIMEOUT", 300, errors
        )
        self.secondary_timeout = _float_env("PREVIEW_SECONDARY_TIMEOUT", 30, errors)
        self.secondary_full_emulation_timeout = _float_env(
            "PREVIEW_SECONDARY_FULL_EMULATION_TIMEOUT", 120, errors
        )
        self.ready_poll_interval = _float_env("PREVIEW_READY_POLL_INTERVAL", 0.5, errors)

        # Snapshot and output limits
        self.output_buffer_lines = _int_env("PREVIEW_OUTPUT_BUFFER_LINES", 2000, errors)
        self.max_file_bytes = _int_env("PREVIEW_MAX_FILE_BYTES", 100_000, errors)

        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        # Validate settings
        self._validate(errors)

    def _validate(self, errors: List[str]):
        """Validate that numeric settings are usable."""
        if self.port_range_start >= self.port_range_end:
            errors.append("PREVIEW_PORT_RANGE_START must be lower than PREVIEW_PORT_RANGE_END")

        for name, value in (
            ("PREVIEW_INSTALL_TIMEOUT", self.install_timeout),
            ("PREVIEW_START_TIMEOUT", self.start_timeout),
            ("PREVIEW_FULL_TOOLCHAIN_START_TIMEOUT", self.full_toolchain_start_timeout),
            ("PREVIEW_SECONDARY_TIMEOUT", self.secondary_timeout),
            ("PREVIEW_SECONDARY_FULL_EMULATION_TIMEOUT", self.secondary_full_emulation_timeout),
            ("PREVIEW_READY_POLL_INTERVAL", self.ready_poll_interval),
        ):
            if value <= 0:
                errors.append(f"{name} must be positive")

        if self.output_buffer_lines <= 0:
            errors.append("PREVIEW_OUTPUT_BUFFER_LINES must be positive")

        if errors:
            raise ConfigError(
                "Invalid preview configuration:\n  - " + "\n  - ".join(errors) + "\n"
                "Please fix these variables in your environment or .env file."
            )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
