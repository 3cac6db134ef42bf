import pytest
import yaml

from liveconf.main import health_port_from_env, overrides_from_args, parse_args, poll_interval_from_env, print_config

from conftest import write_local


def test_flags_become_overrides():
    args = parse_args(["--addr", "localhost:9000", "--role", "server", "--configdir", "/tmp/x"])

    assert overrides_from_args(args) == {"addr": "localhost:9000", "role": "server"}
    assert args.configdir == "/tmp/x"


def test_unknown_role_flag_is_rejected():
    with pytest.raises(SystemExit):
        parse_args(["--role", "relay"])


def test_health_port_from_env(monkeypatch):
    monkeypatch.delenv("LIVECONF_HEALTH_PORT", raising=False)
    assert health_port_from_env() == 8887

    monkeypatch.setenv("LIVECONF_HEALTH_PORT", "0")
    assert health_port_from_env() is None

    monkeypatch.setenv("LIVECONF_HEALTH_PORT", "9100")
    assert health_port_from_env() == 9100


def test_poll_interval_from_env(monkeypatch):
    monkeypatch.setenv("LIVECONF_POLL_INTERVAL", "15")
    assert poll_interval_from_env() == 15.0

    monkeypatch.setenv("LIVECONF_POLL_INTERVAL", "soon")
    assert poll_interval_from_env() == 60.0


def test_print_config(tmp_path, capsys):
    write_local(tmp_path, {"uiaddr": "127.0.0.1:2000"})
    args = parse_args(["--configdir", str(tmp_path), "--addr", "localhost:9000", "--print-config"])

    assert print_config(args, overrides_from_args(args)) == 0

    out = capsys.readouterr().out
    printed = yaml.safe_load(out)
    assert printed["addr"] == "localhost:9000"
    assert printed["ui_addr"] == "127.0.0.1:2000"
    assert printed["fronted_servers"][0]["host"] == "nl.fallbacks.getiantem.org"
