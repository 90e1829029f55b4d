"""Configuration for nexus."""

from nexus.config.loader import get_config_path, load_config
from nexus.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config"]
