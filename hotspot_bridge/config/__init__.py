"""Configuration package for the hotspot bridge."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
