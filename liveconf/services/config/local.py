"""
Local Configuration Store

Owns the operator-editable YAML file (<configdir>/<app>.yaml).

- Loads it, applying defaults and command-line overrides
- Watches it with watchdog and reloads on every completed write
- Applies mutations and writes them back atomically (temp file + rename)

The latest LocalConfig lives in a SnapshotCell; every accepted change
raises the `changed` signal for the publication loop.
"""

import asyncio
import copy
import os
import sys
import threading
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import yaml
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from liveconf.common.config import LocalConfig, load_local_config
from liveconf.common.exceptions import ConfigDirError, ConfigError, ConfigReadError, PersistError
from liveconf.common.logging_setup import get_service_logger
from liveconf.common.state import ChangeSignal, SnapshotCell

from .validator import ConfigValidator

logger = get_service_logger("config.local")

DEFAULT_APP_NAME = "lantern"
# Coalesce bursts of file events (editors often write several times)
DEBOUNCE_SECONDS = 0.2


def config_dir_for(app_name: str, override: str | Path | None = None) -> Path:
    """
    Resolve the per-application config directory.

    Explicit override, then LIVECONF_CONFIG_DIR, then the platform default.
    """
    if override:
        return Path(override).expanduser()

    env_dir = os.environ.get("LIVECONF_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser()

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / app_name.capitalize()
    if os.name == "nt":
        return Path(os.environ.get("APPDATA", Path.home())) / app_name.capitalize()
    # Lowercase on Linux, matching the launcher wrapper
    return Path.home() / f".{app_name.lower()}"


def in_config_dir(config_dir: Path, filename: str) -> Path:
    """Path of filename inside config_dir, creating the directory if needed"""
    logger.debug(f"Placing configuration in {config_dir}")
    try:
        config_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigDirError(str(e), str(config_dir)) from e
    return config_dir / filename


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Nested mapping to dotted keys (client.proxyall)"""
    flat: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def _find_key(data: dict[str, Any], key: str) -> str:
    """Existing spelling of key in data (keys are case-insensitive)"""
    for existing in data:
        if str(existing).lower() == key:
            return existing
    return key


def _set_key(data: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    target = data
    for part in parts[:-1]:
        name = _find_key(target, part)
        if not isinstance(target.get(name), dict):
            target[name] = {}
        target = target[name]
    target[_find_key(target, parts[-1])] = value


def _delete_key(data: dict[str, Any], dotted: str) -> None:
    parts = dotted.split(".")
    target = data
    for part in parts[:-1]:
        target = target.get(_find_key(target, part))
        if not isinstance(target, dict):
            return
    target.pop(_find_key(target, parts[-1]), None)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog handler that reports completed writes of one file"""

    def __init__(self, filename: str, on_change: Callable[[], None]):
        super().__init__()
        self.filename = filename
        self.on_change = on_change

    def _matches(self, path: Any) -> bool:
        return Path(os.fsdecode(path)).name == self.filename

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self.on_change()

    def on_created(self, event: FileSystemEvent) -> None:
        self.on_modified(event)

    def on_closed(self, event: FileSystemEvent) -> None:
        self.on_modified(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic replace shows up as a move onto our filename
        if not event.is_directory and self._matches(event.dest_path):
            self.on_change()


class LocalConfigStore:
    """
    Authoritative owner of LocalConfig.

    load() is pure with respect to the store; initialize(), reload() and
    update() are the only writers of the snapshot cell and they serialize
    on one lock, so a reload never interleaves with a write-back.
    """

    def __init__(
        self,
        app_name: str = DEFAULT_APP_NAME,
        config_dir: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
        validator: ConfigValidator | None = None,
        debounce_seconds: float = DEBOUNCE_SECONDS,
    ):
        self.app_name = app_name
        self.config_dir = config_dir_for(app_name, config_dir)
        self.overrides = {k: v for k, v in (overrides or {}).items() if v not in (None, "")}
        self.validator = validator or ConfigValidator()
        self.debounce_seconds = debounce_seconds

        self.changed = ChangeSignal("local")
        self._cell: SnapshotCell[LocalConfig] = SnapshotCell()
        self._fingerprint: str | None = None
        self._lock = threading.Lock()

    @property
    def filename(self) -> str:
        return f"{self.app_name.lower()}.yaml"

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.filename

    @property
    def snapshot_version(self) -> int:
        return self._cell.version

    def current(self) -> LocalConfig | None:
        """Latest accepted LocalConfig (None before initialize())"""
        return self._cell.value

    def _read_file(self, path: Path) -> dict[str, Any] | None:
        """Raw mapping from the config file; None when the file is missing"""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            return None
        except yaml.YAMLError as e:
            raise ConfigReadError(f"invalid YAML: {e}", str(path)) from e
        except OSError as e:
            raise ConfigReadError(str(e), str(path)) from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigReadError("expected a mapping at top level", str(path))
        return data

    def load(self) -> LocalConfig:
        """
        Read the config file and apply defaults and overrides.

        A missing file is not an error: defaults plus overrides are used.

        Raises:
            ConfigDirError: if the config directory cannot be created
            ConfigReadError: if the file cannot be read, parsed or validated
        """
        path = in_config_dir(self.config_dir, self.filename)

        data = self._read_file(path)
        if data is None:
            logger.warning(f"Config file not found, using defaults: {path}")

        try:
            config = load_local_config(data, self.overrides)
        except ValueError as e:
            raise ConfigReadError(str(e), str(path)) from e

        is_valid, errors = self.validator.validate_local(config)
        if not is_valid:
            raise ConfigReadError("; ".join(errors), str(path))

        return config

    def initialize(self) -> LocalConfig:
        """Startup load; errors propagate and are fatal to the caller"""
        config = self.load()
        with self._lock:
            self._store(config)
        return config

    def reload(self) -> bool:
        """
        Reload after an external edit.

        Returns:
            True if a changed config was accepted; failures keep the
            previous snapshot and return False
        """
        with self._lock:
            try:
                config = self.load()
            except ConfigError as e:
                logger.error(f"Reload failed, keeping previous config: {e}")
                return False
            return self._store(config)

    def update(self, mutate: Callable[[LocalConfig], None]) -> LocalConfig:
        """
        Apply mutate to the config as it is on disk and persist the result.

        The file is re-read under the lock, so an edit not yet picked up
        by the watcher is kept. Only keys the mutation changed are written;
        command-line overrides never reach the file. The snapshot is
        replaced only after the file has been written.

        Raises:
            PersistError: if the file cannot be written (snapshot unchanged)
            ConfigError: if nothing is loaded yet, the file cannot be read
                or the result is invalid
        """
        with self._lock:
            if self._cell.value is None:
                raise ConfigError("local config not loaded")

            path = in_config_dir(self.config_dir, self.filename)
            raw = self._read_file(path) or {}
            try:
                base = load_local_config(raw, self.overrides)
            except ValueError as e:
                raise ConfigReadError(str(e), str(path)) from e

            updated = copy.deepcopy(base)
            mutate(updated)

            is_valid, errors = self.validator.validate_local(updated)
            if not is_valid:
                raise ConfigError(f"invalid update: {'; '.join(errors)}")

            before = _flatten(base.to_dict())
            after = _flatten(updated.to_dict())
            written = copy.deepcopy(raw)
            for key, value in after.items():
                if key not in before or before[key] != value:
                    _set_key(written, key, value)
            for key in before.keys() - after.keys():
                _delete_key(written, key)

            try:
                config = load_local_config(written, self.overrides)
            except ValueError as e:
                raise ConfigError(f"invalid update: {e}") from e

            self._persist(written)
            self._store(config)
            return config

    async def update_async(self, mutate: Callable[[LocalConfig], None]) -> LocalConfig:
        """update() on a worker thread so the file write never blocks the loop"""
        self.changed.bind(asyncio.get_running_loop())
        return await asyncio.to_thread(self.update, mutate)

    def _persist(self, data: dict[str, Any]) -> None:
        """Write to a temp file in the same directory, then rename over"""
        try:
            path = in_config_dir(self.config_dir, self.filename)
        except ConfigDirError as e:
            raise PersistError(e.message, str(self.config_path)) from e

        temp_path = path.with_name(f".{path.name}.tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(path)
        except OSError as e:
            try:
                temp_path.unlink()
            except OSError:
                pass
            raise PersistError(str(e), str(path)) from e

        logger.info(f"Config written to {path}", extra={"path": str(path)})

    def _store(self, config: LocalConfig) -> bool:
        """Publish config if its content differs; caller holds the lock"""
        fingerprint = config.fingerprint()
        if fingerprint == self._fingerprint:
            logger.debug("Local config unchanged")
            return False

        version = self._cell.store(config)
        self._fingerprint = fingerprint
        self.changed.notify()

        logger.info(
            f"Local config applied (v{version}, role={config.role.value}, addr={config.addr})",
            extra={"version": version},
        )
        return True

    async def watch(self) -> AsyncIterator[None]:
        """
        Yield once per (debounced) completed write of the config file.

        Does not parse; the consumer decides what to do with the event.
        """
        loop = asyncio.get_running_loop()
        self.changed.bind(loop)
        queue: asyncio.Queue[None] = asyncio.Queue()

        def on_change() -> None:
            loop.call_soon_threadsafe(queue.put_nowait, None)

        in_config_dir(self.config_dir, self.filename)
        observer = Observer()
        observer.schedule(ConfigFileHandler(self.filename, on_change), str(self.config_dir), recursive=False)
        observer.daemon = True
        observer.start()
        logger.info(f"Watching {self.config_path} for changes")

        try:
            while True:
                await queue.get()
                await asyncio.sleep(self.debounce_seconds)
                while not queue.empty():
                    queue.get_nowait()
                yield
        finally:
            observer.stop()
            await asyncio.to_thread(observer.join, 2.0)
            logger.info("Stopped watching config file")

    async def run(self) -> None:
        """Reload on every file change until cancelled"""
        async for _ in self.watch():
            self.reload()
