"""
Auto-Update Service

Periodically asks the update server for a newer release, routed
through the local proxy address from the merged config.
"""

from .service import AutoUpdater

__all__ = ["AutoUpdater"]
