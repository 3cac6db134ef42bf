import gzip

import httpx
import pytest
import yaml

from liveconf.common.exceptions import DecodeError, FetchError, NetworkError
from liveconf.services.config.cloud import (
    CloudConfigFetcher,
    ETagCache,
    decode_cloud_config,
    load_fallback_cloud_config,
)

from conftest import CLOUD_URL, cloud_doc


def make_fetcher(server) -> CloudConfigFetcher:
    return CloudConfigFetcher(
        url_source=lambda: CLOUD_URL,
        interval_seconds=3600,
        http_client=server.client(),
    )


def test_fallback_is_usable():
    fallback = load_fallback_cloud_config()

    assert not fallback.is_empty()
    assert fallback.fronted_servers[0].masquerade_set in fallback.masquerade_sets
    assert len(fallback.trusted_cas) == 2


@pytest.mark.parametrize("raw", [b"", b"null", b"- a\n- b\n", b"client: [unclosed", b"{}"])
def test_decode_rejects_unusable_documents(raw):
    with pytest.raises(DecodeError):
        decode_cloud_config(raw)


@pytest.mark.asyncio
async def test_starts_from_fallback(cloud_server):
    fetcher = make_fetcher(cloud_server)

    assert fetcher.using_fallback
    assert fetcher.current() == load_fallback_cloud_config()
    assert not fetcher.changed.is_set()


@pytest.mark.asyncio
async def test_applies_gzipped_document(cloud_server):
    cloud_server.publish(cloud_doc(), etag='"v1"')
    fetcher = make_fetcher(cloud_server)

    assert await fetcher.poll_once() is True

    assert fetcher.current().fronted_servers[0].host == "fronted.example.com"
    assert fetcher.etags.get(CLOUD_URL) == '"v1"'
    assert fetcher.changed.consume() is True
    assert not fetcher.using_fallback
    assert cloud_server.requests[0].headers["Accept-Encoding"] == "gzip"


@pytest.mark.asyncio
async def test_plain_body_is_accepted(cloud_server):
    cloud_server.publish(cloud_doc(), etag=None)
    cloud_server.body = yaml.safe_dump(cloud_doc()).encode()
    fetcher = make_fetcher(cloud_server)

    assert await fetcher.poll_once() is True
    assert fetcher.etags.snapshot() == {}


@pytest.mark.asyncio
async def test_not_modified_short_circuits(cloud_server):
    cloud_server.publish(cloud_doc(), etag='"v1"')
    fetcher = make_fetcher(cloud_server)
    await fetcher.poll_once()
    fetcher.changed.consume()
    version = fetcher.snapshot_version

    assert await fetcher.poll(CLOUD_URL, fetcher.etags) is None
    assert await fetcher.poll_once() is False

    assert fetcher.snapshot_version == version
    assert not fetcher.changed.is_set()


@pytest.mark.asyncio
async def test_malformed_document_keeps_previous_config_and_etag(cloud_server):
    cloud_server.publish(cloud_doc(), etag='"v1"')
    fetcher = make_fetcher(cloud_server)
    await fetcher.poll_once()
    fetcher.changed.consume()
    before = fetcher.current()

    cloud_server.body = gzip.compress(b"client: [unclosed")
    cloud_server.etag = '"v2"'

    assert await fetcher.poll_once() is False
    assert fetcher.current() is before
    assert fetcher.etags.get(CLOUD_URL) == '"v1"'
    assert not fetcher.changed.is_set()
    # The next poll retries the broken document rather than getting a 304
    await fetcher.poll_once()
    assert cloud_server.requests[-1].headers["If-None-Match"] == '"v1"'


@pytest.mark.asyncio
async def test_corrupt_gzip_is_a_decode_error(cloud_server):
    cloud_server.publish(cloud_doc(), etag='"v1"')
    cloud_server.body = b"\x1f\x8b" + b"garbage"
    fetcher = make_fetcher(cloud_server)

    with pytest.raises(DecodeError):
        await fetcher.poll(CLOUD_URL, ETagCache())


@pytest.mark.asyncio
async def test_invalid_document_is_rejected(cloud_server):
    doc = cloud_doc()
    doc["client"]["frontedservers"][0]["masqueradeset"] = "missing"
    cloud_server.publish(doc, etag='"v1"')
    fetcher = make_fetcher(cloud_server)

    assert await fetcher.poll_once() is False
    assert fetcher.using_fallback
    assert fetcher.etags.get(CLOUD_URL) is None


@pytest.mark.asyncio
async def test_unexpected_status_keeps_fallback(cloud_server):
    cloud_server.status = 500
    fetcher = make_fetcher(cloud_server)

    with pytest.raises(FetchError) as exc_info:
        await fetcher.poll(CLOUD_URL, fetcher.etags)
    assert exc_info.value.status_code == 500

    assert await fetcher.poll_once() is False
    assert fetcher.using_fallback
    assert fetcher.get_stats()["last_poll"]["outcome"] == "error"


@pytest.mark.asyncio
async def test_transport_failure_is_a_network_error(cloud_server):
    cloud_server.error = httpx.ConnectError("connection refused")
    fetcher = make_fetcher(cloud_server)

    with pytest.raises(NetworkError):
        await fetcher.poll(CLOUD_URL, fetcher.etags)
    assert await fetcher.poll_once() is False


@pytest.mark.asyncio
async def test_same_content_under_new_etag_is_not_a_change(cloud_server):
    cloud_server.publish(cloud_doc(), etag='"v1"')
    fetcher = make_fetcher(cloud_server)
    await fetcher.poll_once()
    fetcher.changed.consume()

    cloud_server.publish(cloud_doc(), etag='"v1b"')

    assert await fetcher.poll_once() is False
    assert fetcher.etags.get(CLOUD_URL) == '"v1b"'
    assert not fetcher.changed.is_set()


@pytest.mark.asyncio
async def test_etag_conversation(cloud_server):
    fetcher = make_fetcher(cloud_server)

    cloud_server.publish(cloud_doc(sites=("a.com",)), etag='"v1"')
    assert await fetcher.poll_once() is True
    assert "If-None-Match" not in cloud_server.requests[0].headers

    assert await fetcher.poll_once() is False
    assert cloud_server.requests[1].headers["If-None-Match"] == '"v1"'

    cloud_server.publish(cloud_doc(sites=("b.com",)), etag='"v2"')
    assert await fetcher.poll_once() is True
    assert cloud_server.requests[2].headers["If-None-Match"] == '"v1"'
    assert fetcher.current().proxied_sites.cloud == ["b.com"]
    assert fetcher.etags.get(CLOUD_URL) == '"v2"'
    assert fetcher.snapshot_version == 3


@pytest.mark.asyncio
async def test_no_url_skips_poll(cloud_server):
    fetcher = CloudConfigFetcher(url_source=lambda: "", http_client=cloud_server.client())

    assert await fetcher.poll_once() is False
    assert cloud_server.requests == []
