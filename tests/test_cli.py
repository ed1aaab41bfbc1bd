import pytest

from forwarder import cli


def parse(*argv):
    return cli.build_parser().parse_args(list(argv))


def test_start_flags_map_to_settings_fields():
    args = parse("start", "-H", "broker", "-P", "8883", "-u", "user", "-p", "pw",
                 "-s", "sensor-<machine-id>", "-t", "topic/<sensor-id>",
                 "-f", "/tmp/alert_json.txt", "-v", "-d", "30")

    assert cli.flag_overrides(args) == {
        "mqtt_host": "broker",
        "mqtt_port": 8883,
        "mqtt_username": "user",
        "mqtt_password": "pw",
        "sensor_id": "sensor-<machine-id>",
        "mqtt_topic": "topic/<sensor-id>",
        "snort_alert_file_path": "/tmp/alert_json.txt",
        "verbose": True,
        "stats_interval": 30,
    }


def test_unset_flags_are_not_overrides():
    args = parse("start", "-f", "/tmp/alert_json.txt")
    assert cli.flag_overrides(args) == {"snort_alert_file_path": "/tmp/alert_json.txt"}
    assert args.use_env is False


def test_flag_mode_ignores_env(monkeypatch):
    monkeypatch.setenv("MQTT_PORT", "2883")
    monkeypatch.setenv("MACHINE_ID", "from-env")
    monkeypatch.setattr("forwarder.settings.resolve_machine_id", lambda: "from-host")

    settings = cli.load_settings(None, use_env=False, overrides={"mqtt_host": "flag-broker"})

    assert settings.mqtt_host == "flag-broker"
    assert settings.mqtt_port == 1883
    assert settings.sensor_id == "from-host"


def test_env_mode_ignores_flags(monkeypatch):
    monkeypatch.setenv("MQTT_HOST", "env-broker")
    monkeypatch.setenv("MACHINE_ID", "abc123")

    settings = cli.load_settings(None, use_env=True, overrides={"mqtt_host": "flag-broker"})

    assert settings.mqtt_host == "env-broker"
    assert settings.sensor_id == "abc123"


def test_missing_settings_file_exits_1(tmp_path):
    with pytest.raises(SystemExit) as exc:
        cli.load_settings(tmp_path / "missing.yaml", use_env=False, overrides={})
    assert exc.value.code == 1


def test_invalid_port_exits_1(tmp_path):
    with pytest.raises(SystemExit) as exc:
        cli.start_service(None, use_env=False, overrides={"mqtt_port": 70000})
    assert exc.value.code == 1


def test_missing_alert_file_exits_1(tmp_path, monkeypatch):
    monkeypatch.setattr("forwarder.settings.resolve_machine_id", lambda: "abc123")
    overrides = {
        "snort_alert_file_path": str(tmp_path / "absent.json"),
    }
    monkeypatch.setattr(cli, "Forwarder", _forwarder_without_manager)

    with pytest.raises(SystemExit) as exc:
        cli.start_service(None, use_env=False, overrides=overrides)
    assert exc.value.code == 1


def _forwarder_without_manager(settings):
    from conftest import FakeBroker
    from forwarder.core import Forwarder

    settings = settings.model_copy(update={"manager_addr": None, "log_to_console": False})
    return Forwarder(settings=settings, broker=FakeBroker())


def test_command_is_required():
    with pytest.raises(SystemExit):
        parse()
