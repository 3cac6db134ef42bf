"""
Config Service - Configuration Synchronization

Responsible for:
- Loading and hot-reloading the local YAML config
- Polling the cloud config document on a jittered schedule
- Merging both into one snapshot and publishing it to consumers
- Exposing a health endpoint with the current config version
"""

import asyncio
import inspect
import signal
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx
from aiohttp import web

from liveconf.common.config import LocalConfig, MergedConfig
from liveconf.common.exceptions import UpdateGlobalsError
from liveconf.common.logging_setup import get_service_logger, log_publish
from liveconf.common.state import ConfigHandle, ProcessGlobals

from .cloud import DEFAULT_POLL_INTERVAL_SECONDS, CloudConfigFetcher
from .local import DEFAULT_APP_NAME, LocalConfigStore
from .merger import merge

logger = get_service_logger("config")

UpdateHandler = Callable[[MergedConfig], Awaitable[None] | None]


class LoopState(str, Enum):
    """Publication loop states"""
    IDLE = "idle"
    PUBLISHING = "publishing"


class PublicationLoop:
    """
    Single coordinator between the two config sources and consumers.

    IDLE: wait for the local or cloud change signal.
    PUBLISHING: merge, update process globals, store into the handle,
    call the update handler. Always returns to IDLE afterwards.
    """

    def __init__(
        self,
        local: LocalConfigStore,
        cloud: CloudConfigFetcher,
        handle: ConfigHandle,
        process_globals: ProcessGlobals,
        handler: UpdateHandler | None = None,
    ):
        self.local = local
        self.cloud = cloud
        self.handle = handle
        self.process_globals = process_globals
        self.handler = handler

        self.state = LoopState.IDLE
        self.publish_count = 0
        self.failure_count = 0

    async def wait_for_change(self) -> list[str]:
        """
        Block until either source signals, then consume every set signal.

        Returns:
            Names of the sources that changed
        """
        signals = [self.local.changed, self.cloud.changed]

        if not any(s.is_set() for s in signals):
            waiters = [asyncio.create_task(s.wait()) for s in signals]
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()
                await asyncio.gather(*waiters, return_exceptions=True)

        return [s.name for s in signals if s.consume()]

    async def publish(self, reason: str) -> bool:
        """
        One publishing pass over the latest snapshot of each source.

        Returns:
            True if the handle was updated
        """
        self.state = LoopState.PUBLISHING
        try:
            local = self.local.current()
            if local is None:
                logger.warning("No local config loaded yet, skipping publish")
                return False

            merged = merge(local, self.cloud.current())

            try:
                self.process_globals.update(merged)
            except UpdateGlobalsError as e:
                self.failure_count += 1
                logger.error(f"{e}; keeping previously published config")
                return False

            version = self.handle.store(merged)
            self.publish_count += 1
            log_publish(logger, version, merged.fingerprint(), reason)

            if self.handler is not None:
                try:
                    result = self.handler(merged)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Update handler error: {e}")

            return True
        finally:
            self.state = LoopState.IDLE

    async def run(self) -> None:
        """Publish on every change; runs until cancelled"""
        logger.info("Publication loop started")
        while True:
            sources = await self.wait_for_change()
            if sources:
                await self.publish(f"{'+'.join(sources)} change")


class ConfigService:
    """
    Process-scoped context object for configuration.

    Owns the local store, the cloud fetcher, the publication loop, the
    config handle and the process globals. Construct once at startup and
    hand it (or its handle) to collaborators.
    """

    def __init__(
        self,
        app_name: str = DEFAULT_APP_NAME,
        config_dir: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
        update_handler: UpdateHandler | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        health_port: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.process_globals = ProcessGlobals()
        self.handle = ConfigHandle()

        self.local = LocalConfigStore(app_name=app_name, config_dir=config_dir, overrides=overrides)
        self.cloud = CloudConfigFetcher(
            url_source=self._cloud_config_url,
            ca_source=self._cloud_config_ca,
            interval_seconds=poll_interval_seconds,
            http_client=http_client,
        )
        self.publisher = PublicationLoop(
            self.local,
            self.cloud,
            self.handle,
            self.process_globals,
            update_handler,
        )

        self.health_port = health_port
        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

    def _cloud_config_url(self) -> str:
        local = self.local.current()
        return local.cloud_config if local else ""

    def _cloud_config_ca(self) -> str:
        local = self.local.current()
        return local.cloud_config_ca if local else ""

    async def initialize(self) -> MergedConfig:
        """
        Load the local config and publish it against the fallback cloud config.

        Local load errors propagate: they are fatal at startup.
        """
        loop = asyncio.get_running_loop()
        self.local.changed.bind(loop)
        self.cloud.changed.bind(loop)

        self.local.initialize()
        # The startup publish below covers both initial snapshots
        self.local.changed.consume()
        self.cloud.changed.consume()

        if not await self.publisher.publish("startup"):
            raise UpdateGlobalsError("initial configuration could not be published")

        return self.handle.get()

    async def run_background(self) -> None:
        """Initialize if needed and start watcher, poller and publisher"""
        loop = asyncio.get_running_loop()
        self.local.changed.bind(loop)
        self.cloud.changed.bind(loop)

        if self.handle.get() is None:
            await self.initialize()

        self._running = True
        await self.cloud.start()
        self._tasks = [
            asyncio.create_task(self.local.run(), name="config-watch"),
            asyncio.create_task(self.publisher.run(), name="config-publish"),
        ]

        if self.health_port:
            await self._start_health_server()

    async def start(self) -> None:
        """Start the config service and wait for shutdown"""
        logger.info("Starting Config Service")

        await self.run_background()

        config = self.handle.get()
        logger.info(
            f"Config Service started (role: {config.role.value}, addr: {config.addr})",
            extra={"config_path": str(self.local.config_path)},
        )

        self._setup_signal_handlers()

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop polling and watching together"""
        logger.info("Stopping Config Service")

        self._running = False

        await self.cloud.stop()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        await self._stop_health_server()

        logger.info("Config Service stopped")

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def get_config(self) -> MergedConfig | None:
        """Current merged configuration"""
        return self.handle.get()

    async def update(self, mutate: Callable[[LocalConfig], None]) -> LocalConfig:
        """Mutate and persist the local config (see LocalConfigStore.update)"""
        return await self.local.update_async(mutate)

    async def force_sync(self) -> bool:
        """Poll the cloud config now, outside the schedule"""
        return await self.cloud.poll_once()

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_app = web.Application()
        self._health_app.router.add_get("/health", self._health_handler)
        self._health_app.router.add_post("/sync", self._sync_handler)

        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, "127.0.0.1", self.health_port)
        await site.start()

        logger.info(f"Health server started on port {self.health_port}")

    async def _stop_health_server(self) -> None:
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        snapshot = self.handle.snapshot()

        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "config",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config_version": snapshot.version,
            "fingerprint": snapshot.value.fingerprint() if snapshot.value else None,
            "publisher_state": self.publisher.state.value,
            "publish_count": self.publisher.publish_count,
            "cloud": self.cloud.get_stats(),
        })

    async def _sync_handler(self, request: web.Request) -> web.Response:
        changed = await self.force_sync()

        return web.json_response({
            "changed": changed,
            "config_version": self.handle.version,
        })
