import asyncio

import pytest
import yaml

from liveconf.services.settings import SettingsService

from conftest import merged_config, write_local


@pytest.fixture
def settings_service(store, config_dir):
    write_local(config_dir, {"autolaunch": False})
    store.initialize()
    launches = []
    service = SettingsService(store, version="1.2.3", build_date="2024-01-01", on_auto_launch_changed=launches.append)
    service.launches = launches
    return service


@pytest.mark.asyncio
async def test_hello_sends_current_settings(settings_service):
    sent = []

    await settings_service.hello(sent.append)

    assert sent == [{
        "version": "1.2.3",
        "buildDate": "2024-01-01",
        "autoReport": True,
        "autoLaunch": False,
        "proxyAll": False,
    }]


@pytest.mark.asyncio
async def test_hello_awaits_async_writer(settings_service):
    sent = []

    async def write(message):
        sent.append(message)

    await settings_service.hello(write)

    assert len(sent) == 1


@pytest.mark.asyncio
async def test_message_is_written_to_local_config(settings_service, store, config_dir):
    await settings_service.handle_message({"autoReport": False, "proxyAll": True})

    on_disk = yaml.safe_load((config_dir / "lantern.yaml").read_text(encoding="utf-8"))
    assert on_disk["autoreport"] is False
    assert on_disk["client"]["proxyall"] is True
    assert store.current().auto_report is False


@pytest.mark.asyncio
async def test_unknown_and_non_boolean_fields_are_ignored(settings_service, store):
    version = store.snapshot_version

    assert await settings_service.handle_message({"autoReport": "yes", "theme": "dark"}) is None
    assert store.snapshot_version == version


@pytest.mark.asyncio
async def test_run_consumes_inbox(settings_service, store):
    inbox = asyncio.Queue()
    task = asyncio.create_task(settings_service.run(inbox))

    inbox.put_nowait(["not", "a", "dict"])
    inbox.put_nowait({"autoLaunch": True})
    await asyncio.wait_for(inbox.join(), timeout=2.0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert store.current().auto_launch is True


def test_refresh_reports_auto_launch_changes(settings_service):
    settings_service.refresh(merged_config(autolaunch=False, client={"proxyall": True}))
    assert settings_service.launches == []
    assert settings_service.settings.proxy_all is True

    settings_service.refresh(merged_config(autolaunch=True))
    assert settings_service.launches == [True]
    assert settings_service.settings.auto_launch is True
