"""
Custom Exception Classes for liveconf

Hierarchical exception structure for error handling across services.
Every error carries a `recoverable` flag; only a failed local load at
startup is treated as fatal by the entry point.
"""


class LiveConfError(Exception):
    """Base exception for all liveconf errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(LiveConfError):
    """Local configuration errors"""

    def __init__(self, message: str, path: str | None = None, recoverable: bool = True):
        self.path = path
        super().__init__(f"Config Error: {message}", recoverable)


class ConfigReadError(ConfigError):
    """Local config file could not be read or parsed"""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(f"unable to read {path or 'config'}: {message}", path)


class ConfigDirError(ConfigError):
    """Config directory could not be created"""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(f"unable to create configdir at {path}: {message}", path)


class PersistError(ConfigError):
    """Writing the local config back to disk failed"""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(f"unable to persist {path or 'config'}: {message}", path)


class SyncError(LiveConfError):
    """Cloud configuration poll errors"""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(f"Sync Error: {message}", recoverable=True)


class NetworkError(SyncError):
    """Transport failure (connect, timeout, reset) while polling"""


class FetchError(SyncError):
    """Cloud endpoint answered with an unexpected status"""

    def __init__(self, status_code: int, url: str | None = None):
        self.status_code = status_code
        super().__init__(f"Unexpected response status: {status_code}", url)


class DecodeError(SyncError):
    """Cloud document could not be decompressed or decoded"""


class UpdateGlobalsError(LiveConfError):
    """Propagating a merged snapshot to process globals failed"""

    def __init__(self, message: str):
        super().__init__(f"Unable to update globals: {message}", recoverable=True)
