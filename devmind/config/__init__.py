"""Configuration package."""
from devmind.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
