"""roomchat application configuration.

Loads settings from a single YAML file:
  * roomchat.settings.yaml: non-secret configuration

The path can be overridden with the ROOMCHAT_SETTINGS environment variable.
Every section has defaults, so a missing file yields a working configuration.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomchat.settings.yaml")
SETTINGS_ENV_VAR = "ROOMCHAT_SETTINGS"

DEFAULT_ROOMS = ["general", "nairobi", "mombasa", "kisumu", "coastal"]


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class RoomSettings(BaseModel):
    default_room:          str       = "general"
    seed_rooms:            List[str] = Field(default_factory=lambda: list(DEFAULT_ROOMS))
    max_room_name_length:  int       = 64
    max_history_per_room:  int       = 1000
    default_page_size:     int       = 20
    max_page_size:         int       = 100

    @field_validator("seed_rooms")
    @classmethod
    def _strip_room_names(cls, value: List[str]) -> List[str]:
        return [name.strip() for name in value if name and name.strip()]


class UploadSettings(BaseModel):
    max_bytes: int = 10 * 1024 * 1024  # 10 MiB


class ClientSettings(BaseModel):
    history_window:     int   = 50
    typing_debounce_s:  float = 1.0


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:   ServerSettings  = Field(default_factory=ServerSettings)
    rooms:    RoomSettings    = Field(default_factory=RoomSettings)
    uploads:  UploadSettings  = Field(default_factory=UploadSettings)
    client:   ClientSettings  = Field(default_factory=ClientSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppSettings:
    """Load settings into a single *AppSettings* object.

    Resolution order: explicit ``settings_path``, then ``$ROOMCHAT_SETTINGS``,
    then ``roomchat.settings.yaml`` in the working directory.
    """
    if settings_path is None:
        env_path = os.environ.get(SETTINGS_ENV_VAR)
        settings_path = Path(env_path) if env_path else SETTINGS_FILE

    settings_data = _load_yaml(Path(settings_path))
    app_settings = AppSettings(**settings_data)

    default_room = app_settings.rooms.default_room
    if default_room not in app_settings.rooms.seed_rooms:
        app_settings.rooms.seed_rooms.insert(0, default_room)

    logger.info(
        "Settings loaded (server=%s:%s, rooms=%d, upload_limit=%d bytes)",
        app_settings.server.host,
        app_settings.server.port,
        len(app_settings.rooms.seed_rooms),
        app_settings.uploads.max_bytes,
    )
    return app_settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    return load_config()
