"""Configuration module for condense."""

from condense.config.loader import load_config, get_config_path
from condense.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
