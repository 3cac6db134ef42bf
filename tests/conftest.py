import asyncio
import gzip

import httpx
import pytest
import yaml

from liveconf.common.config import CloudConfig, load_local_config
from liveconf.services.config.local import LocalConfigStore
from liveconf.services.config.merger import merge

CLOUD_URL = "https://config.example.com/cloud.yaml.gz"


def gzip_yaml(doc) -> bytes:
    return gzip.compress(yaml.safe_dump(doc).encode("utf-8"))


def cloud_doc(host: str = "fronted.example.com", qos: int = 10, sites=("example.com",)) -> dict:
    return {
        "client": {
            "frontedservers": [
                {"host": host, "port": 443, "masqueradeset": "cdn", "qos": qos, "weight": 100},
            ],
            "masqueradesets": {
                "cdn": [{"domain": "cdn.example.com", "ipaddress": "192.0.2.10"}],
            },
        },
        "proxiedsites": {"cloud": list(sites)},
    }


def write_local(config_dir, data: dict, filename: str = "lantern.yaml"):
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / filename
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def merged_config(cloud: CloudConfig | None = None, **local):
    return merge(load_local_config(local), cloud or CloudConfig())


class FakeCloudServer:
    """Serves one cloud document, honouring If-None-Match"""

    def __init__(self):
        self.status = 200
        self.body = b""
        self.etag: str | None = None
        self.error: Exception | None = None
        self.requests: list[httpx.Request] = []

    def publish(self, doc, etag: str | None) -> None:
        self.status = 200
        self.body = gzip_yaml(doc)
        self.etag = etag

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status != 200:
            return httpx.Response(self.status)
        if self.etag and request.headers.get("If-None-Match") == self.etag:
            return httpx.Response(304)
        headers = {"ETag": self.etag} if self.etag else {}
        return httpx.Response(200, content=self.body, headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def config_dir(tmp_path):
    return tmp_path / "conf"


@pytest.fixture
def store(config_dir):
    return LocalConfigStore(config_dir=config_dir, debounce_seconds=0.05)


@pytest.fixture
def cloud_server():
    return FakeCloudServer()


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or the timeout expires"""

    async def wait(predicate, timeout: float = 5.0, interval: float = 0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return wait
