"""
Config Service - Configuration Management

Responsibilities:
- Load the local YAML config and reload it on every edit
- Poll the cloud config document with conditional GETs
- Merge both into one immutable snapshot
- Notify consumers of every published change
"""

from .cloud import CloudConfigFetcher, ETagCache, decode_cloud_config, load_fallback_cloud_config
from .local import LocalConfigStore, config_dir_for
from .merger import merge
from .service import ConfigService, LoopState, PublicationLoop
from .validator import ConfigValidator

__all__ = [
    "ConfigService",
    "PublicationLoop",
    "LoopState",
    "LocalConfigStore",
    "CloudConfigFetcher",
    "ETagCache",
    "ConfigValidator",
    "merge",
    "decode_cloud_config",
    "load_fallback_cloud_config",
    "config_dir_for",
]
