"""
Auto-Updater

Keeps a proxied HTTP client in step with the configured proxy address
and runs the update check on a fixed interval:
1. configure() on every published config
2. Rebuild the client when the proxy address changes
3. One watch task calls apply_next every check interval
4. Checks never overlap
"""

import asyncio
import ssl
from typing import Awaitable, Callable

import httpx

from liveconf.common.config import MergedConfig
from liveconf.common.logging_setup import get_service_logger

logger = get_service_logger("autoupdate")

UPDATE_SERVICE_URL = "https://update.getlantern.org/update"
DEFAULT_CHECK_INTERVAL_SECONDS = 2 * 3600
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

# apply_next(client, current_version); raises on a failed update
ApplyNext = Callable[[httpx.AsyncClient, str], Awaitable[None]]


class AutoUpdater:
    """
    Auto-update boundary.

    The patch mechanism itself is injected as apply_next.
    """

    def __init__(
        self,
        version: str,
        apply_next: ApplyNext,
        check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self.version = version
        self._apply_next = apply_next
        self.check_interval_seconds = check_interval_seconds
        self.timeout_seconds = timeout_seconds

        self._last_addr: str | None = None
        self._client: httpx.AsyncClient | None = None
        self._task: asyncio.Task | None = None
        self._update_lock = asyncio.Lock()
        self._running = False
        self.check_count = 0

    @property
    def client(self) -> httpx.AsyncClient | None:
        return self._client

    @property
    def watching(self) -> bool:
        return self._task is not None and not self._task.done()

    async def configure(self, config: MergedConfig) -> None:
        """Follow proxy address changes from a published config"""
        addr = config.addr
        if addr == self._last_addr:
            logger.debug("Autoupdate configuration unchanged")
            return

        self._last_addr = addr
        if not addr:
            logger.error("No known proxy, disabling auto updates")
            await self._replace_client(None)
            return

        verify: ssl.SSLContext | bool = True
        if config.cloud_config_ca:
            try:
                verify = ssl.create_default_context(cadata=config.cloud_config_ca)
            except (ssl.SSLError, ValueError) as e:
                logger.error(f"Could not create proxied HTTP client, disabling auto-updates: {e}")
                await self._replace_client(None)
                return

        client = httpx.AsyncClient(
            proxy=f"http://{addr}",
            timeout=self.timeout_seconds,
            verify=verify,
        )
        await self._replace_client(client)
        logger.info(f"Auto-updates routed through proxy at {addr}")

        if not self.watching:
            self._running = True
            self._task = asyncio.create_task(self._watch_loop(), name="autoupdate")

    async def _replace_client(self, client: httpx.AsyncClient | None) -> None:
        # Waits for a running check so its client is not closed under it
        async with self._update_lock:
            old, self._client = self._client, client
        if old is not None:
            await old.aclose()

    async def apply_next(self) -> bool:
        """
        Run one update check.

        Returns:
            True if an update was applied
        """
        async with self._update_lock:
            if self._client is None:
                return False

            self.check_count += 1
            try:
                await self._apply_next(self._client, self.version)
            except Exception as e:
                logger.warning(f"Error getting update: {e}")
                return False

        logger.info("Got update")
        return True

    async def _watch_loop(self) -> None:
        logger.debug(f"Software version: {self.version}")
        while self._running:
            await self.apply_next()
            await asyncio.sleep(self.check_interval_seconds)

    async def stop(self) -> None:
        """Stop the watch task and close the client"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._replace_client(None)
        logger.info("Auto-updater stopped")
