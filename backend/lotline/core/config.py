"""
Settings access point.

Modules import ``settings`` from here rather than instantiating Settings.
"""
from lotline.core.settings import Settings, get_settings

settings: Settings = get_settings()

__all__ = ["Settings", "get_settings", "settings"]
