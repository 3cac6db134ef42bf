"""Liveconf - live merged local and cloud configuration for a proxy client"""

from .services import __version__

__all__ = ["__version__"]
