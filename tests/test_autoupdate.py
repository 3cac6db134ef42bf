import asyncio

import pytest

from liveconf.services.autoupdate import AutoUpdater

from conftest import merged_config


class Recorder:
    def __init__(self, delay: float = 0.0):
        self.calls = []
        self.delay = delay
        self.active = 0
        self.peak = 0

    async def __call__(self, client, version):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.calls.append((client, version))
        await asyncio.sleep(self.delay)
        self.active -= 1


@pytest.mark.asyncio
async def test_configure_starts_single_watch(eventually):
    apply_next = Recorder()
    updater = AutoUpdater("1.2.3", apply_next, check_interval_seconds=3600)

    await updater.configure(merged_config(addr="localhost:8787"))
    try:
        await eventually(lambda: len(apply_next.calls) == 1)
        client, version = apply_next.calls[0]
        assert client is updater.client
        assert version == "1.2.3"
        assert updater.watching
    finally:
        await updater.stop()

    assert not updater.watching
    assert updater.client is None


@pytest.mark.asyncio
async def test_unchanged_addr_keeps_client():
    updater = AutoUpdater("1.2.3", Recorder(), check_interval_seconds=3600)
    try:
        await updater.configure(merged_config(addr="localhost:8787"))
        client = updater.client
        task = updater._task

        await updater.configure(merged_config(addr="localhost:8787", autolaunch=True))

        assert updater.client is client
        assert updater._task is task
    finally:
        await updater.stop()


@pytest.mark.asyncio
async def test_new_addr_replaces_client_without_second_watch():
    updater = AutoUpdater("1.2.3", Recorder(), check_interval_seconds=3600)
    try:
        await updater.configure(merged_config(addr="localhost:8787"))
        first_client = updater.client
        task = updater._task

        await updater.configure(merged_config(addr="localhost:9999"))

        assert updater.client is not first_client
        assert first_client.is_closed
        assert updater._task is task
    finally:
        await updater.stop()


@pytest.mark.asyncio
async def test_no_proxy_disables_updates():
    apply_next = Recorder()
    updater = AutoUpdater("1.2.3", apply_next, check_interval_seconds=3600)
    config = merged_config()
    object.__setattr__(config, "addr", "")

    await updater.configure(config)

    assert updater.client is None
    assert not updater.watching
    assert await updater.apply_next() is False
    assert apply_next.calls == []


@pytest.mark.asyncio
async def test_checks_never_overlap():
    apply_next = Recorder(delay=0.05)
    updater = AutoUpdater("1.2.3", apply_next, check_interval_seconds=3600)
    try:
        await updater.configure(merged_config(addr="localhost:8787"))
        await asyncio.gather(updater.apply_next(), updater.apply_next(), updater.apply_next())
    finally:
        await updater.stop()

    assert apply_next.peak == 1
    assert updater.check_count >= 3


@pytest.mark.asyncio
async def test_failed_update_is_reported():
    async def failing(client, version):
        raise RuntimeError("signature mismatch")

    updater = AutoUpdater("1.2.3", failing, check_interval_seconds=3600)
    try:
        await updater.configure(merged_config(addr="localhost:8787"))
        assert await updater.apply_next() is False
    finally:
        await updater.stop()
