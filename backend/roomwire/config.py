"""roomwire application configuration.

Loads settings from two YAML files:
  * roomwire.settings.yaml: non-secret configuration
  * roomwire.secrets.yaml: secrets (never committed)

Both files are optional; anything missing falls back to the model defaults.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomwire.settings.yaml")
SECRETS_FILE  = Path("roomwire.secrets.yaml")

IN_MEMORY_DB = ":memory:"


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
    access_token_expire_minutes: int = Field(default=60, ge=1)


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:         str  = "0.0.0.0"
    port:         int  = 8000
    reload:       bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: Literal["debug", "info", "warning", "error"] = "info"

    @field_validator("level", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class StoreSettings(BaseModel):
    db_path: str = "roomwire.duckdb"


class MembershipSettings(BaseModel):
    """Membership oracle cache window (seconds). Zero disables caching."""
    cache_ttl_seconds: float = Field(default=5.0, ge=0)


class PresenceSettings(BaseModel):
    """Lifetime of the advisory per-user status cache."""
    status_cache_ttl_seconds: float = Field(default=300.0, gt=0)


class MessageSettings(BaseModel):
    max_content_length: int = Field(default=4000, ge=1)
    default_page_size:  int = Field(default=50, ge=1)
    max_page_size:      int = Field(default=100, ge=1)
    max_attachments:    int = Field(default=10, ge=0)
    max_emoji_length:   int = Field(default=32, ge=1)


class AppConfig(BaseModel):
    server:     ServerSettings     = Field(default_factory=ServerSettings)
    logging:    LoggingSettings    = Field(default_factory=LoggingSettings)
    store:      StoreSettings      = Field(default_factory=StoreSettings)
    membership: MembershipSettings = Field(default_factory=MembershipSettings)
    presence:   PresenceSettings   = Field(default_factory=PresenceSettings)
    messages:   MessageSettings    = Field(default_factory=MessageSettings)
    secrets:    Secrets            = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative ``store.db_path`` against the settings file directory."""
    if db_path == IN_MEMORY_DB:
        return db_path
    path = Path(db_path)
    if path.is_absolute():
        return str(path)
    return str(settings_path.resolve().parent / path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else SECRETS_FILE

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    if settings_path.exists():
        config.store.db_path = _resolve_db_path(config.store.db_path, settings_path)

    logger.info(
        "Config loaded (server=%s:%s, store=%s, membership.cache_ttl=%ss)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.membership.cache_ttl_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (used by tests)."""
    global _config
    _config = None
