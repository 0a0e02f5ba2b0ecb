"""Configuration: environment settings and YAML scenarios."""

from slicer.config.settings import Settings, get_settings, setup_logging

__all__ = ["Settings", "get_settings", "setup_logging"]
