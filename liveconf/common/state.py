"""
Shared State Management

In-process state sharing between the config sources, the publication
loop and every consumer of configuration.

- SnapshotCell: versioned "latest value" slot. Readers never lock;
  writers serialize on a lock and swap a single immutable reference.
- ConfigHandle: the read-only face of the merged-config cell.
- ChangeSignal: level-triggered, coalescing wake-up flag.
- ProcessGlobals: values other subsystems derive from the merged config
  (instance id, trusted CA pool).
"""

import asyncio
import ssl
import threading
from dataclasses import dataclass
from typing import Generic, TypeVar

from liveconf.common.config import MergedConfig
from liveconf.common.exceptions import UpdateGlobalsError

T = TypeVar("T")


@dataclass(frozen=True)
class Snapshot(Generic[T]):
    """A published value and the version it was published under"""
    value: T | None
    version: int


class SnapshotCell(Generic[T]):
    """
    Versioned single-writer, many-reader slot.

    The whole (value, version) pair lives in one immutable Snapshot, so a
    reader either sees the old pair or the new pair, never a mix.
    """

    def __init__(self, initial: T | None = None):
        self._snapshot: Snapshot[T] = Snapshot(initial, 0 if initial is None else 1)
        self._write_lock = threading.Lock()

    def load(self) -> Snapshot[T]:
        """Current snapshot; never blocks"""
        return self._snapshot

    def store(self, value: T) -> int:
        """
        Publish a new value.

        Returns:
            The version assigned to the value (strictly increasing)
        """
        with self._write_lock:
            version = self._snapshot.version + 1
            self._snapshot = Snapshot(value, version)
            return version

    @property
    def value(self) -> T | None:
        return self._snapshot.value

    @property
    def version(self) -> int:
        return self._snapshot.version


class ConfigHandle:
    """
    Concurrency-safe accessor for the current MergedConfig.

    Only the publication loop calls store(); everything else calls get().
    """

    def __init__(self):
        self._cell: SnapshotCell[MergedConfig] = SnapshotCell()

    def get(self) -> MergedConfig | None:
        """Latest published config (None only before initialization)"""
        return self._cell.load().value

    def snapshot(self) -> Snapshot[MergedConfig]:
        """Config and version, read together"""
        return self._cell.load()

    @property
    def version(self) -> int:
        return self._cell.version

    def store(self, config: MergedConfig) -> int:
        return self._cell.store(config)


class ChangeSignal:
    """
    Coalescing change notification.

    Any number of notify() calls before the next consume() collapse into
    one wake-up. Safe to notify from a non-loop thread once bound.
    """

    def __init__(self, name: str):
        self.name = name
        self._event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop so other threads can notify safely"""
        self._loop = loop

    def notify(self) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._event.set)
                return
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def consume(self) -> bool:
        """Clear the flag; True if it was set"""
        was_set = self._event.is_set()
        self._event.clear()
        return was_set

    async def wait(self) -> None:
        await self._event.wait()


class ProcessGlobals:
    """
    Process-wide values derived from each published config.

    Owned by the ConfigService context object; there is no module-level
    instance.
    """

    def __init__(self):
        self.instance_id: str = ""
        self.trusted_cas: list[str] = []
        self.ssl_context: ssl.SSLContext | None = None

    def set_trusted_cas(self, certs: list[str]) -> None:
        """
        Build a client SSL context that trusts exactly the given CAs.

        Raises:
            UpdateGlobalsError: if any cert cannot be loaded
        """
        if not certs:
            self.trusted_cas = []
            self.ssl_context = None
            return

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        try:
            context.load_verify_locations(cadata="\n".join(certs))
        except (ssl.SSLError, ValueError) as e:
            raise UpdateGlobalsError(f"invalid trusted CA: {e}") from e

        self.trusted_cas = list(certs)
        self.ssl_context = context

    def update(self, config: MergedConfig) -> None:
        """
        Propagate instance id and trusted CAs.

        Raises before changing anything if the CAs are invalid.
        """
        self.set_trusted_cas(config.trusted_ca_certs())
        self.instance_id = config.instance_id
