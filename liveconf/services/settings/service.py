"""
Settings Service

Sends the current settings to each new UI client and turns messages
from the UI into local config updates.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from liveconf.common.config import ClientConfig, LocalConfig, MergedConfig
from liveconf.common.exceptions import ConfigError
from liveconf.common.logging_setup import get_service_logger

from ..config.local import LocalConfigStore

logger = get_service_logger("settings")

MESSAGE_TYPE = "Settings"

# UI field name -> local config YAML key
UI_FIELDS = {
    "autoReport": "autoreport",
    "autoLaunch": "autolaunch",
    "proxyAll": "client.proxyall",
}

Writer = Callable[[dict[str, Any]], Awaitable[None] | None]


@dataclass(frozen=True)
class Settings:
    """Settings as shown in the UI"""
    version: str
    build_date: str
    auto_report: bool
    auto_launch: bool
    proxy_all: bool

    def to_message(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "buildDate": self.build_date,
            "autoReport": self.auto_report,
            "autoLaunch": self.auto_launch,
            "proxyAll": self.proxy_all,
        }


def _set_auto_report(config: LocalConfig, value: bool) -> None:
    config.auto_report = value


def _set_auto_launch(config: LocalConfig, value: bool) -> None:
    config.auto_launch = value


def _set_proxy_all(config: LocalConfig, value: bool) -> None:
    if config.client is None:
        config.client = ClientConfig()
    config.client.proxy_all = value


_SETTERS: dict[str, Callable[[LocalConfig, bool], None]] = {
    "autoreport": _set_auto_report,
    "autolaunch": _set_auto_launch,
    "client.proxyall": _set_proxy_all,
}


class SettingsService:
    """
    Settings channel between UI clients and the local config.

    The YAML rewrite through LocalConfigStore.update is the only way a
    UI message changes configuration; the file watcher then reloads it
    and the publication loop takes care of the rest.
    """

    def __init__(
        self,
        store: LocalConfigStore,
        version: str,
        build_date: str,
        on_auto_launch_changed: Callable[[bool], None] | None = None,
    ):
        self.store = store
        self.version = version
        self.build_date = build_date
        self.on_auto_launch_changed = on_auto_launch_changed

        config = store.current()
        self._settings = self._build(
            bool(config and config.auto_report),
            bool(config and config.auto_launch),
            bool(config and config.client and config.client.proxy_all),
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    def _build(self, auto_report: bool, auto_launch: bool, proxy_all: bool) -> Settings:
        return Settings(
            version=self.version,
            build_date=self.build_date,
            auto_report=auto_report,
            auto_launch=auto_launch,
            proxy_all=proxy_all,
        )

    async def hello(self, write: Writer) -> None:
        """Send the current settings to a newly connected UI client"""
        logger.debug("Sending settings to new client")
        result = write(self._settings.to_message())
        if inspect.isawaitable(result):
            await result

    async def handle_message(self, message: dict[str, Any]) -> LocalConfig | None:
        """
        Apply a settings message from the UI.

        Only boolean values for known fields are taken; anything else is
        ignored with a warning.

        Raises:
            ConfigError: if the update cannot be applied or persisted
        """
        changes: dict[str, bool] = {}
        for ui_name, key in UI_FIELDS.items():
            if ui_name not in message:
                continue
            value = message[ui_name]
            if not isinstance(value, bool):
                logger.warning(f"Ignoring non-boolean {ui_name}: {value!r}")
                continue
            changes[key] = value

        if not changes:
            logger.debug("Settings message carried no changes")
            return None

        def mutate(config: LocalConfig) -> None:
            for key, value in changes.items():
                _SETTERS[key](config, value)

        updated = await self.store.update_async(mutate)
        logger.info(f"Settings updated: {', '.join(sorted(changes))}")
        return updated

    async def run(self, inbox: asyncio.Queue) -> None:
        """Consume UI messages until cancelled"""
        logger.info("Settings service started")
        while True:
            message = await inbox.get()
            try:
                if isinstance(message, dict):
                    await self.handle_message(message)
                else:
                    logger.warning(f"Ignoring malformed settings message: {message!r}")
            except ConfigError as e:
                logger.error(f"Unable to save settings: {e}")
            finally:
                inbox.task_done()

    def refresh(self, config: MergedConfig) -> Settings:
        """
        Rebuild the settings from a newly published config.

        Calls on_auto_launch_changed when the value changed on disk.
        """
        previous = self._settings
        self._settings = self._build(
            bool(config.auto_report),
            bool(config.auto_launch),
            bool(config.client and config.client.proxy_all),
        )

        if self._settings.auto_launch != previous.auto_launch:
            logger.info(f"Auto-launch changed to {self._settings.auto_launch}")
            if self.on_auto_launch_changed is not None:
                self.on_auto_launch_changed(self._settings.auto_launch)

        return self._settings
