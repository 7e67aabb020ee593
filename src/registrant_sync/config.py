"""registrant_sync.config

Explicit run configuration for fetch/reconcile flows.

A SyncConfig is built once per invocation (CLI call, gateway request) and
passed down; nothing reads process-wide state after that point.

Usage:
    from pathlib import Path
    from registrant_sync.config import load_config

    config = load_config(Path("config/registrant_sync.yml"))
    dsn = config.require("source_dsn")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_MEDIA_BASE_URL = "https://ipitinga.ideartcloud.com.br/uploads"
DEFAULT_MAX_ROWS = 5000

# setting -> environment variable that overrides it
ENV_OVERRIDES: dict[str, str] = {
    "source_dsn": "DATABASE_URL",
    "db_dsn": "REGISTRANT_DB_DSN",
    "media_base_url": "MEDIA_BASE_URL",
    "functions_url": "FUNCTIONS_URL",
    "api_key": "FUNCTIONS_API_KEY",
    "access_token": "FUNCTIONS_ACCESS_TOKEN",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when configuration is missing, malformed, or out of range."""


# ---------------------------------------------------------------------------
# SyncConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncConfig:
    source_dsn: str | None = None
    db_dsn: str | None = None
    media_base_url: str = DEFAULT_MEDIA_BASE_URL
    registration_table: str = "Registration"
    district_table: str = "District"
    church_table: str = "Church"
    max_rows: int = DEFAULT_MAX_ROWS
    functions_url: str | None = None
    function_name: str = "api-proxy"
    api_key: str | None = None
    access_token: str | None = None
    request_timeout: float | None = None

    def require(self, name: str) -> str:
        """Return a mandatory string setting or raise ConfigValidationError."""
        value = getattr(self, name)
        if not value:
            label = ENV_OVERRIDES.get(name, name)
            raise ConfigValidationError(f"{label} not configured")
        return value

    def with_overrides(self, **overrides: Any) -> SyncConfig:
        """Copy with non-None overrides applied (CLI flags win over file/env)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        updated = replace(self, **changes)
        validate_config(updated)
        return updated


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SyncConfig:
    """Build a SyncConfig from an optional YAML file plus environment overrides.

    Args:
        path: YAML file holding a mapping of SyncConfig field names, or None.
        env: Environment mapping; defaults to os.environ.

    Raises:
        ConfigValidationError: Unknown keys, non-mapping root, bad values.
        FileNotFoundError: If path is given and does not exist.
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}
    if path is not None:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigValidationError("YAML root must be a mapping.")
        data.update(loaded)

    known = {f.name for f in fields(SyncConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigValidationError(f"Unknown config keys: {sorted(unknown)}")

    for name, var in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            data[name] = value

    if "max_rows" in data:
        try:
            data["max_rows"] = int(data["max_rows"])
        except (TypeError, ValueError):
            raise ConfigValidationError(f"max_rows value '{data['max_rows']}' is not an integer.")
    if data.get("request_timeout") is not None:
        try:
            data["request_timeout"] = float(data["request_timeout"])
        except (TypeError, ValueError):
            raise ConfigValidationError(
                f"request_timeout value '{data['request_timeout']}' is not numeric."
            )

    config = SyncConfig(**data)
    validate_config(config)
    return config


def validate_config(config: SyncConfig) -> None:
    if config.max_rows <= 0:
        raise ConfigValidationError(f"max_rows ({config.max_rows}) must be > 0.")
    if not (config.media_base_url or "").strip():
        raise ConfigValidationError("media_base_url must not be blank.")
    for name in ("registration_table", "district_table", "church_table", "function_name"):
        if not (getattr(config, name) or "").strip():
            raise ConfigValidationError(f"{name} must not be blank.")
    if config.request_timeout is not None and config.request_timeout <= 0:
        raise ConfigValidationError(
            f"request_timeout ({config.request_timeout}) must be > 0."
        )
