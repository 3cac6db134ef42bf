import asyncio
import threading

import pytest

from liveconf.common.exceptions import UpdateGlobalsError
from liveconf.common.state import ChangeSignal, ConfigHandle, ProcessGlobals, SnapshotCell
from liveconf.services.config.cloud import load_fallback_cloud_config

from conftest import merged_config

BAD_PEM = "-----BEGIN CERTIFICATE-----\nbm90IGEgY2VydA==\n-----END CERTIFICATE-----\n"


def test_snapshot_cell_versions_increase():
    cell = SnapshotCell()
    assert cell.load().value is None
    assert cell.version == 0

    assert cell.store("a") == 1
    assert cell.store("b") == 2
    assert cell.load().value == "b"


def test_concurrent_readers_never_see_torn_values():
    cell = SnapshotCell((0, 0))
    stop = threading.Event()
    failures = []

    def reader():
        last_version = 0
        while not stop.is_set():
            snapshot = cell.load()
            a, b = snapshot.value
            if a != b or snapshot.version < last_version:
                failures.append((snapshot.value, snapshot.version, last_version))
            last_version = snapshot.version

    readers = [threading.Thread(target=reader) for _ in range(4)]
    for t in readers:
        t.start()
    for i in range(1, 2000):
        cell.store((i, i))
    stop.set()
    for t in readers:
        t.join()

    assert failures == []
    assert cell.version == 2000


def test_config_handle_starts_empty():
    handle = ConfigHandle()
    assert handle.get() is None
    assert handle.version == 0

    config = merged_config()
    assert handle.store(config) == 1
    assert handle.snapshot().value is config


def test_change_signal_coalesces_notifications():
    signal = ChangeSignal("local")
    signal.notify()
    signal.notify()
    signal.notify()

    assert signal.consume() is True
    assert signal.consume() is False


@pytest.mark.asyncio
async def test_change_signal_from_another_thread():
    signal = ChangeSignal("cloud")
    signal.bind(asyncio.get_running_loop())

    thread = threading.Thread(target=signal.notify)
    thread.start()
    await asyncio.wait_for(signal.wait(), timeout=2.0)
    thread.join()

    assert signal.consume() is True


def test_process_globals_trusts_fallback_cas():
    globals_ = ProcessGlobals()
    config = merged_config(cloud=load_fallback_cloud_config(), instanceid="host-1")

    globals_.update(config)

    assert globals_.instance_id == "host-1"
    assert len(globals_.trusted_cas) == 2
    assert globals_.ssl_context is not None


def test_process_globals_without_cas_clears_context():
    globals_ = ProcessGlobals()
    globals_.update(merged_config(cloud=load_fallback_cloud_config()))

    globals_.set_trusted_cas([])

    assert globals_.ssl_context is None
    assert globals_.trusted_cas == []


def test_invalid_ca_leaves_globals_untouched():
    globals_ = ProcessGlobals()
    globals_.update(merged_config(cloud=load_fallback_cloud_config(), instanceid="before"))
    context = globals_.ssl_context

    cloud = load_fallback_cloud_config()
    cloud.trusted_cas[0].cert = BAD_PEM
    with pytest.raises(UpdateGlobalsError):
        globals_.update(merged_config(cloud=cloud, instanceid="after"))

    assert globals_.ssl_context is context
    assert globals_.instance_id == "before"
