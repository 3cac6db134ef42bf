"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Jittered poll scheduling
- state.py - Snapshot cells, change signals, process globals
"""

from .config import (
    Role,
    LocalConfig,
    StatsConfig,
    ServerConfig,
    ClientConfig,
    CloudConfig,
    FrontedServerInfo,
    ChainedServerInfo,
    Masquerade,
    ProxiedSitesConfig,
    ProxiedSitesDelta,
    CA,
    MergedConfig,
    load_local_config,
    load_cloud_config,
)
from .exceptions import (
    LiveConfError,
    ConfigError,
    ConfigReadError,
    ConfigDirError,
    PersistError,
    SyncError,
    NetworkError,
    FetchError,
    DecodeError,
    UpdateGlobalsError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    LogContext,
    log_publish,
    log_poll_failure,
)
from .scheduler import JitteredLoop, poll_delay
from .state import (
    Snapshot,
    SnapshotCell,
    ConfigHandle,
    ChangeSignal,
    ProcessGlobals,
)

__all__ = [
    # Config
    "Role",
    "LocalConfig",
    "StatsConfig",
    "ServerConfig",
    "ClientConfig",
    "CloudConfig",
    "FrontedServerInfo",
    "ChainedServerInfo",
    "Masquerade",
    "ProxiedSitesConfig",
    "ProxiedSitesDelta",
    "CA",
    "MergedConfig",
    "load_local_config",
    "load_cloud_config",
    # Exceptions
    "LiveConfError",
    "ConfigError",
    "ConfigReadError",
    "ConfigDirError",
    "PersistError",
    "SyncError",
    "NetworkError",
    "FetchError",
    "DecodeError",
    "UpdateGlobalsError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "LogContext",
    "log_publish",
    "log_poll_failure",
    # Scheduling
    "JitteredLoop",
    "poll_delay",
    # State
    "Snapshot",
    "SnapshotCell",
    "ConfigHandle",
    "ChangeSignal",
    "ProcessGlobals",
]
