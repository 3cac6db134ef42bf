"""
Settings Service - UI Settings Channel

Exchanges the user-facing settings with UI clients. Writes go through
the local config file, so they are picked up like any other edit.
"""

from .service import Settings, SettingsService

__all__ = ["Settings", "SettingsService"]
