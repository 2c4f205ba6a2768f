"""RelayChat configuration.

Loads settings from two YAML files:
  * relaychat.settings.yaml: non-secret configuration
  * relaychat.secrets.yaml: secrets (never committed)

File locations can be overridden with RELAYCHAT_SETTINGS / RELAYCHAT_SECRETS.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path(os.environ.get("RELAYCHAT_SETTINGS", "relaychat.settings.yaml"))
SECRETS_FILE  = Path(os.environ.get("RELAYCHAT_SECRETS", "relaychat.secrets.yaml"))


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    debug:           bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(getattr(logging, value.upper(), None), int):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class RelaySettings(BaseModel):
    """Server-side relay behaviour."""
    db_path:                str   = "relaychat_messages.duckdb"
    default_page_size:      int   = 50
    max_page_size:          int   = 100
    auth_timeout_seconds:   float = 10.0
    token_ttl_seconds:      int   = 300
    max_participants:       int   = 0   # 0 = no limit

    @model_validator(mode="after")
    def _page_sizes(self) -> "RelaySettings":
        if self.default_page_size < 1 or self.max_page_size < self.default_page_size:
            raise ValueError("require 1 <= default_page_size <= max_page_size")
        return self


class ClientSettings(BaseModel):
    """Client core: connection recovery and history paging."""
    api_base_url:           str   = "http://localhost:8000"
    ws_base_url:            str   = "ws://localhost:8000"
    backoff_base_ms:        float = 1000.0
    backoff_cap_ms:         float = 30000.0
    backoff_jitter:         float = 0.0
    max_reconnect_attempts: int   = 5
    auth_timeout_seconds:   float = 10.0
    page_size:              int   = 50
    pagination_cooldown_ms: float = 500.0
    request_timeout_seconds: float = 10.0

    @field_validator("backoff_jitter")
    @classmethod
    def _jitter_range(cls, value: float) -> float:
        if not 0.0 <= value <= 0.2:
            raise ValueError("backoff_jitter must be within [0, 0.2]")
        return value

    @field_validator("max_reconnect_attempts", "page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    relay:   RelaySettings   = Field(default_factory=RelaySettings)
    client:  ClientSettings  = Field(default_factory=ClientSettings)
    secrets: Secrets         = Field(default_factory=Secrets)

    @model_validator(mode="after")
    def _client_page_fits_relay(self) -> "AppSettings":
        # The relay clamps larger pages; a short page reads as end of history.
        if self.client.page_size > self.relay.max_page_size:
            raise ValueError(
                f"client.page_size ({self.client.page_size}) exceeds "
                f"relay.max_page_size ({self.relay.max_page_size})"
            )
        return self


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_file or SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, relay.db_path=%s, client.max_reconnect_attempts=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.relay.db_path,
        app_settings.client.max_reconnect_attempts,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: AppSettings) -> None:
    """Install settings explicitly (application start-up, tests)."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget cached settings so the next get_config() reloads them."""
    global _config
    _config = None
