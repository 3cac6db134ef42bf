#!/usr/bin/env python3
"""
Liveconf - Entry Point

Starts the config service with its two collaborators:
- Settings: UI settings backed by the local config file
- Auto-update: update checks through the local proxy

Usage:
    liveconf                              # Start with the platform config dir
    liveconf --configdir ./conf           # Use a custom config directory
    liveconf --role server --addr :443    # Override local config values
    liveconf --print-config               # Print the merged config and exit
"""

import argparse
import asyncio
import logging
import os
import sys

import httpx
import yaml

from liveconf.common.config import MergedConfig
from liveconf.common.exceptions import LiveConfError
from liveconf.common.logging_setup import LogContext, setup_logging
from liveconf.services import __version__
from liveconf.services.autoupdate import AutoUpdater
from liveconf.services.autoupdate.service import UPDATE_SERVICE_URL
from liveconf.services.config import (
    ConfigService,
    LocalConfigStore,
    load_fallback_cloud_config,
    merge,
)
from liveconf.services.config.cloud import DEFAULT_POLL_INTERVAL_SECONDS
from liveconf.services.settings import SettingsService

BUILD_DATE = os.environ.get("LIVECONF_BUILD_DATE", "unknown")
DEFAULT_HEALTH_PORT = 8887

# Flags that map one-to-one onto local config keys
OVERRIDE_FLAGS = (
    "addr",
    "role",
    "instanceid",
    "cloudconfig",
    "cloudconfigca",
    "uiaddr",
    "cpuprofile",
    "memprofile",
)

logger = logging.getLogger("liveconf.main")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="liveconf",
        description="Live merged local and cloud configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
    LIVECONF_CONFIG_DIR      Config directory (overridden by --configdir)
    LIVECONF_POLL_INTERVAL   Cloud poll base interval in seconds (default 60)
    LIVECONF_HEALTH_PORT     Health server port, 0 disables (default 8887)
    LIVECONF_LOG_LEVEL       DEBUG, INFO, WARNING, ERROR (default INFO)
    LIVECONF_LOG_FORMAT      json or text (default json)
        """,
    )

    parser.add_argument("--configdir", help="Directory holding the local config file")
    parser.add_argument("--addr", help="Proxy listen address, host:port")
    parser.add_argument("--role", choices=["client", "server"], help="Run as client (downstream) or server (upstream)")
    parser.add_argument("--instanceid", help="Instance id reported to stats")
    parser.add_argument("--cloudconfig", help="URL of the cloud config document")
    parser.add_argument("--cloudconfigca", help="PEM CA used to verify the cloud config server")
    parser.add_argument("--uiaddr", help="UI listen address, host:port")
    parser.add_argument("--cpuprofile", help="Write a CPU profile to this file")
    parser.add_argument("--memprofile", help="Write a memory profile to this file")
    parser.add_argument(
        "--print-config",
        action="store_true",
        help="Print the config merged with the built-in cloud defaults and exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"liveconf {__version__} (built {BUILD_DATE})",
    )

    return parser.parse_args(argv)


def overrides_from_args(args: argparse.Namespace) -> dict[str, str]:
    """Non-empty flags become local config overrides"""
    overrides = {}
    for name in OVERRIDE_FLAGS:
        value = getattr(args, name, None)
        if value:
            overrides[name] = value
    return overrides


def poll_interval_from_env() -> float:
    raw = os.environ.get("LIVECONF_POLL_INTERVAL")
    if not raw:
        return DEFAULT_POLL_INTERVAL_SECONDS
    try:
        interval = float(raw)
    except ValueError:
        logger.warning(f"Invalid LIVECONF_POLL_INTERVAL {raw!r}, using default")
        return DEFAULT_POLL_INTERVAL_SECONDS
    return interval if interval > 0 else DEFAULT_POLL_INTERVAL_SECONDS


def health_port_from_env() -> int | None:
    raw = os.environ.get("LIVECONF_HEALTH_PORT")
    if raw is None or raw == "":
        return DEFAULT_HEALTH_PORT
    try:
        port = int(raw)
    except ValueError:
        logger.warning(f"Invalid LIVECONF_HEALTH_PORT {raw!r}, using default")
        return DEFAULT_HEALTH_PORT
    return port or None


async def query_update_service(client: httpx.AsyncClient, version: str) -> None:
    """
    Ask the update service whether a newer release exists.

    Applying a patch is left to the platform installer; this only
    reports what the service offers.
    """
    response = await client.get(UPDATE_SERVICE_URL, params={"version": version})
    if response.status_code == 204:
        logger.debug(f"No update available for {version}")
        return
    response.raise_for_status()
    logger.info(f"Update available for {version}: {response.text[:200]}")


def print_config(args: argparse.Namespace, overrides: dict[str, str]) -> int:
    store = LocalConfigStore(config_dir=args.configdir, overrides=overrides)
    try:
        local = store.load()
    except LiveConfError as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    merged = merge(local, load_fallback_cloud_config())
    print(yaml.safe_dump(merged.to_dict(), default_flow_style=False, sort_keys=True))
    return 0


async def main_async(args: argparse.Namespace, overrides: dict[str, str]) -> int:
    """
    Run the config service until SIGINT/SIGTERM.

    Returns:
        Process exit code
    """
    settings: SettingsService | None = None
    updater = AutoUpdater(__version__, query_update_service)

    async def on_update(config: MergedConfig) -> None:
        if settings is not None:
            settings.refresh(config)
        if config.is_downstream():
            await updater.configure(config)

    service = ConfigService(
        config_dir=args.configdir,
        overrides=overrides,
        update_handler=on_update,
        poll_interval_seconds=poll_interval_from_env(),
        health_port=health_port_from_env(),
    )

    try:
        await service.initialize()
    except LiveConfError as e:
        logger.critical(f"Unable to initialize configuration: {e}")
        return 1

    settings = SettingsService(
        service.local,
        version=__version__,
        build_date=BUILD_DATE,
        on_auto_launch_changed=lambda enabled: logger.info(f"Auto-launch set to {enabled}"),
    )

    try:
        await service.start()
    finally:
        await updater.stop()
        await service.stop()

    return 0


def run(argv: list[str] | None = None) -> None:
    """Console script entry point"""
    args = parse_args(argv)
    overrides = overrides_from_args(args)

    if args.print_config:
        sys.exit(print_config(args, overrides))

    setup_logging(
        "main",
        log_level=os.environ.get("LIVECONF_LOG_LEVEL", "INFO"),
        json_format=os.environ.get("LIVECONF_LOG_FORMAT", "json").lower() == "json",
    )
    logger.info(f"Starting liveconf {__version__}")

    try:
        with LogContext(app_version=__version__):
            code = asyncio.run(main_async(args, overrides))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        code = 0

    sys.exit(code)


if __name__ == "__main__":
    run()
