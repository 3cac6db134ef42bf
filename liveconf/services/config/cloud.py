"""
Cloud Configuration Fetcher

Polls the centrally published cloud document (gzip-compressed YAML).

Optimized for low load on the config endpoint:
- Conditional GET with the last seen ETag; 304 costs no parse
- Jittered schedule so clients don't poll in lockstep
- Reuses a single HTTP client between polls
"""

import gzip
import ssl
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import resources
from typing import Callable

import httpx
import yaml

from liveconf.common.config import CloudConfig, load_cloud_config
from liveconf.common.exceptions import DecodeError, FetchError, NetworkError, SyncError
from liveconf.common.logging_setup import get_service_logger, log_poll_failure
from liveconf.common.scheduler import JitteredLoop
from liveconf.common.state import ChangeSignal, SnapshotCell

from .validator import ConfigValidator

logger = get_service_logger("config.cloud")

DEFAULT_POLL_INTERVAL_SECONDS = 60.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
ETAG_HEADER = "ETag"
IF_NONE_MATCH_HEADER = "If-None-Match"
GZIP_MAGIC = b"\x1f\x8b"


@dataclass
class PollResult:
    """Body of a 200 response and the validation token it carried"""
    body: bytes
    etag: str | None = None


class ETagCache:
    """
    Last seen validation token per poll URL.

    Private to one fetcher; only commit() writes to it.
    """

    def __init__(self):
        self._tokens: dict[str, str] = {}

    def get(self, url: str) -> str | None:
        return self._tokens.get(url)

    def commit(self, url: str, etag: str) -> None:
        self._tokens[url] = etag

    def snapshot(self) -> dict[str, str]:
        return dict(self._tokens)


def decode_cloud_config(raw: bytes) -> CloudConfig:
    """
    Parse a decompressed cloud document.

    Raises:
        DecodeError: on invalid YAML, a wrong shape, or an empty document;
            a zero-valued CloudConfig is never returned
    """
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise DecodeError(f"Unable to unmarshal YAML for update: {e}") from e

    if data is None:
        raise DecodeError("Cloud config document is empty")
    if not isinstance(data, dict):
        raise DecodeError(f"Cloud config must be a mapping, got {type(data).__name__}")

    try:
        config = load_cloud_config(data)
    except ValueError as e:
        raise DecodeError(f"Invalid cloud config: {e}") from e

    if config.is_empty():
        raise DecodeError("Cloud config document has no usable fields")

    return config


def load_fallback_cloud_config() -> CloudConfig:
    """Built-in relay/masquerade/CA defaults bundled with the package"""
    raw = resources.files(__package__).joinpath("fallback.yaml").read_bytes()
    return decode_cloud_config(raw)


class CloudConfigFetcher:
    """
    Owns the authoritative CloudConfig.

    Starts from the bundled fallback; each successful poll replaces the
    snapshot wholesale. Any failure keeps the previous snapshot.
    """

    def __init__(
        self,
        url_source: Callable[[], str],
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        ca_source: Callable[[], str] | None = None,
        validator: ConfigValidator | None = None,
        etag_header: str = ETAG_HEADER,
        if_none_match_header: str = IF_NONE_MATCH_HEADER,
        fallback: CloudConfig | None = None,
    ):
        self.url_source = url_source
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.ca_source = ca_source
        self.validator = validator or ConfigValidator()
        self.etag_header = etag_header
        self.if_none_match_header = if_none_match_header

        self.changed = ChangeSignal("cloud")
        self.etags = ETagCache()

        initial = fallback or load_fallback_cloud_config()
        self._cell: SnapshotCell[CloudConfig] = SnapshotCell(initial)
        self._fingerprint = initial.fingerprint()
        self._has_polled = False

        # Reusable HTTP client; only a client we built ourselves is closed by us
        self._client = http_client
        self._owns_client = http_client is None
        self._client_ca: str = ""

        self._loop = JitteredLoop(
            interval_seconds,
            self.poll_once,
            name="cloud-poll",
            timeout_seconds=interval_seconds,
        )
        self._last_poll: dict = {}

    def current(self) -> CloudConfig:
        return self._cell.value

    @property
    def snapshot_version(self) -> int:
        return self._cell.version

    @property
    def using_fallback(self) -> bool:
        """True until a cloud document has been applied"""
        return not self._has_polled

    async def configure_http_client(self, client: httpx.AsyncClient) -> None:
        """Use an externally built (e.g. proxied) client from now on"""
        await self.close()
        self._client = client
        self._owns_client = False

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client"""
        ca = self.ca_source() if self.ca_source else ""

        if self._client is not None and self._owns_client and ca != self._client_ca:
            await self.close()

        if self._client is None or self._client.is_closed:
            verify: ssl.SSLContext | bool = True
            if ca:
                verify = ssl.create_default_context(cadata=ca)
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, verify=verify)
            self._owns_client = True
            self._client_ca = ca
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if we own it"""
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def poll(self, url: str, etags: ETagCache) -> PollResult | None:
        """
        Conditional GET of the cloud document.

        Returns:
            None when the server answered 304, otherwise the decompressed
            body and the new validation token (not yet committed)

        Raises:
            NetworkError: transport failure or timeout
            FetchError: any status other than 200/304
            DecodeError: corrupt gzip stream
        """
        logger.debug(f"Checking for cloud configuration at: {url}")

        headers = {
            "Accept-Encoding": "gzip",
            # Close after reading; avoids stale keep-alive EOFs between polls
            "Connection": "close",
        }
        last_etag = etags.get(url)
        if last_etag:
            headers[self.if_none_match_header] = last_etag

        client = await self._get_client()
        try:
            response = await client.get(url, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Unable to fetch cloud config at {url}: {e}", url) from e

        if response.status_code == 304:
            logger.debug(f"Config unchanged in cloud at {url}")
            return None
        if response.status_code != 200:
            raise FetchError(response.status_code, url)

        body = response.content
        # httpx already undid a transport-level Content-Encoding: gzip
        if body[:2] == GZIP_MAGIC:
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError, zlib.error) as e:
                raise DecodeError(f"Unable to open gzip reader: {e}", url) from e

        return PollResult(body=body, etag=response.headers.get(self.etag_header))

    async def poll_once(self) -> bool:
        """
        One poll cycle: fetch, decode, validate, apply.

        Returns:
            True if a new cloud snapshot was stored
        """
        url = self.url_source()
        if not url:
            logger.warning("No cloud config URL configured, skipping poll")
            return False

        try:
            result = await self.poll(url, self.etags)
            if result is None:
                self._record(url, "unchanged")
                return False

            config = decode_cloud_config(result.body)
            is_valid, errors = self.validator.validate_cloud(config)
            if not is_valid:
                raise DecodeError("; ".join(errors), url)
        except SyncError as e:
            log_poll_failure(logger, url, e)
            self._record(url, "error", error=str(e))
            return False

        if result.etag:
            self.etags.commit(url, result.etag)
        self._has_polled = True

        changed = self._store(config)
        self._record(url, "applied" if changed else "same_content")
        return changed

    def _store(self, config: CloudConfig) -> bool:
        fingerprint = config.fingerprint()
        if fingerprint == self._fingerprint:
            logger.debug("Cloud config fetched (no content changes)")
            return False

        version = self._cell.store(config)
        self._fingerprint = fingerprint
        self.changed.notify()

        logger.info(
            f"Applying cloud config v{version}: {len(config.fronted_servers)} fronted, "
            f"{len(config.chained_servers)} chained, {len(config.trusted_cas)} CAs",
            extra={"version": version},
        )
        return True

    def _record(self, url: str, outcome: str, error: str | None = None) -> None:
        self._last_poll = {
            "url": url,
            "outcome": outcome,
            "at": datetime.now(timezone.utc).isoformat(),
        }
        if error:
            self._last_poll["error"] = error

    async def run(self) -> None:
        """Poll on the jittered schedule in the current task until cancelled"""
        logger.info(f"Cloud config polling every ~{self.interval_seconds:.0f}s")
        await self._loop.run()

    async def start(self) -> None:
        """Start the jittered poll schedule in the background"""
        await self._loop.start()
        logger.info(f"Cloud config polling every ~{self.interval_seconds:.0f}s")

    async def stop(self) -> None:
        await self._loop.stop()
        await self.close()

    def get_stats(self) -> dict:
        return {
            **self._loop.get_stats(),
            "using_fallback": self.using_fallback,
            "snapshot_version": self.snapshot_version,
            "last_poll": self._last_poll,
        }
