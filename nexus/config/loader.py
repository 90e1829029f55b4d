"""Configuration loading utilities."""

import json
import os
from pathlib import Path

from nexus.config.schema import Config
from nexus.logging import get_logger

logger = get_logger(__name__)


def get_config_path() -> Path:
    """Return the config file path, honoring ``NEXUS_CONFIG``."""
    override = os.environ.get("NEXUS_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".nexus" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from a JSON file, layered under ``NEXUS_*`` env vars.

    Values present in the file win over the environment for the same key;
    nested sections are merged. A missing or unreadable file yields the
    environment/default configuration.
    """
    path = config_path or get_config_path()
    data: dict = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("config_load_failed", path=str(path), error=str(e))
            data = {}
    return Config(**data)
