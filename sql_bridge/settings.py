"""Settings for sql_bridge.

Values come from keyword arguments, then ``SQL_BRIDGE_*`` environment
variables, then an optional ``.env`` file. Host, port and credentials are
passed to the worker untouched; the bridge never interprets them.
"""

import codecs
from pathlib import Path
from typing import List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Where the Java worker ships relative to this package
DEFAULT_WORKER_PATH = (
    Path(__file__).resolve().parent.parent / "JavaSybaseLink" / "JavaSybaseLink.jar"
)

# Longest single worker output line (50MB)
MAX_LINE_SIZE: int = 50 * 1024 * 1024


class BridgeSettings(BaseSettings):
    """Connection and runtime settings for one bridge instance."""

    # =========================================================================
    # DATABASE (opaque, forwarded to the worker)
    # =========================================================================
    host: str = "localhost"
    port: int = Field(default=5000, ge=1, le=65535)
    database: str = ""
    username: str = ""
    password: SecretStr = SecretStr("")

    # =========================================================================
    # WORKER PROCESS
    # =========================================================================
    java_path: str = "java"
    worker_path: Optional[str] = None
    # Full argv override; when set, java_path/worker_path are ignored
    worker_command: Optional[List[str]] = None
    encoding: str = "utf-8"
    line_limit: int = Field(default=MAX_LINE_SIZE, ge=1024)
    connect_timeout: Optional[float] = Field(default=None, gt=0)
    terminate_timeout: float = Field(default=5.0, gt=0, le=300)

    # =========================================================================
    # BEHAVIOUR
    # =========================================================================
    fail_on_channel_fault: bool = False

    # =========================================================================
    # LOGGING
    # =========================================================================
    log_timing: bool = False
    logs: bool = False
    log_level: str = "INFO"
    json_logs: bool = True

    @field_validator("encoding", mode="after")
    @classmethod
    def validate_encoding(cls, v: str) -> str:
        """Reject codec names Python does not know."""
        try:
            codecs.lookup(v)
        except LookupError:
            raise ValueError(f"Unknown text encoding: {v}")
        return v

    @field_validator("worker_command", mode="after")
    @classmethod
    def validate_worker_command(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and not v:
            raise ValueError("worker_command must not be empty")
        return v

    @field_validator("log_level", mode="after")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    model_config = SettingsConfigDict(
        env_prefix="SQL_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def resolved_worker_path(self) -> str:
        return self.worker_path or str(DEFAULT_WORKER_PATH)


def build_worker_command(settings: BridgeSettings) -> List[str]:
    """Return the argv used to start the worker.

    Defaults to ``java -jar <jar> host port database username password``.
    """
    if settings.worker_command:
        return list(settings.worker_command)
    return [
        settings.java_path,
        "-jar",
        settings.resolved_worker_path(),
        settings.host,
        str(settings.port),
        settings.database,
        settings.username,
        settings.password.get_secret_value(),
    ]


# =============================================================================
# GLOBAL SETTINGS (Lazy Initialization)
# =============================================================================

_settings: Optional[BridgeSettings] = None


def get_settings() -> BridgeSettings:
    """Get global settings instance.

    Prefer passing settings to SqlBridge explicitly; this is for scripts.
    """
    global _settings
    if _settings is None:
        _settings = BridgeSettings()
    return _settings


def set_settings(settings_instance: BridgeSettings) -> None:
    global _settings
    _settings = settings_instance


def reset_settings() -> None:
    """Forget the global settings; the next get_settings() rereads the env."""
    global _settings
    _settings = None
