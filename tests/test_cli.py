from __future__ import annotations

from pathlib import Path

import pytest
from fakes import MAT_ADDRESS, make_config
from typer.testing import CliRunner

from heatmatctl import cli
from heatmatctl.core.errors import CommunicationError, ConfigurationError
from heatmatctl.core.model import DetectedDevice, DeviceSnapshot, MatConfig


class FakeClient:
    instances: list[FakeClient] = []

    def __init__(self, config: MatConfig) -> None:
        self.config = config
        self.snapshot = DeviceSnapshot.initial(config.variant)
        self.calls: list[tuple[str, object]] = []
        self.listeners = []
        FakeClient.instances.append(self)

    async def __aenter__(self) -> FakeClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        self.calls.append(("stop", None))

    async def wait_ready(self, timeout: float | None = None) -> None:
        self.calls.append(("wait_ready", timeout))

    async def refresh(self) -> None:
        self.calls.append(("refresh", None))

    def add_listener(self, listener) -> None:
        self.listeners.append(listener)
        listener(self.snapshot)

    def get_snapshot(self) -> DeviceSnapshot:
        return self.snapshot

    async def set_temperature(self, celsius: float) -> bool:
        self.calls.append(("temp", celsius))
        level = self.config.variant.level_for(celsius)
        self.snapshot = DeviceSnapshot(
            target_temperature=self.config.variant.levels[level],
            current_temperature=self.config.variant.levels[level],
            heating=level > 0,
            confirmed_level=level,
        )
        return True

    async def set_power(self, on: bool) -> bool:
        self.calls.append(("power", on))
        return False

    async def request_timer_hours(self, hours: float) -> bool:
        self.calls.append(("timer", hours))
        self.snapshot = DeviceSnapshot(
            target_temperature=15.0,
            current_temperature=15.0,
            timer_hours=min(int(hours), 15),
            timer_on=True,
        )
        return True


@pytest.fixture(autouse=True)
def fake_runtime(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    FakeClient.instances = []
    monkeypatch.setattr(cli, "Client", FakeClient)
    monkeypatch.setattr(cli, "load_config", lambda path=None: make_config())
    monkeypatch.setattr(cli, "default_config_path", lambda: tmp_path / "missing.yaml")


runner = CliRunner()


def test_packet_command() -> None:
    result = runner.invoke(cli.app, ["packet", "3"])
    assert result.exit_code == 0
    assert result.stdout.strip() == "03fc03fc"


def test_packet_out_of_range() -> None:
    result = runner.invoke(cli.app, ["packet", "300"])
    assert result.exit_code == 1
    assert "Error: Level 300" in result.stderr


def test_decode_command() -> None:
    result = runner.invoke(cli.app, ["decode", "0x0ff00ff0"])
    assert result.exit_code == 0
    assert "level 15" in result.stdout


def test_decode_corrupted_packet_is_clean() -> None:
    result = runner.invoke(cli.app, ["decode", "03fd03fc"])
    assert result.exit_code == 1
    assert "Error: Checksum mismatch" in result.stderr
    assert "Traceback" not in result.stderr

    result = runner.invoke(cli.app, ["decode", "zz"])
    assert result.exit_code == 1
    assert "not valid hex" in result.stderr


def test_variants_command() -> None:
    result = runner.invoke(cli.app, ["variants"])
    assert result.exit_code == 0
    assert "stepped:" in result.stdout
    assert "fine:" in result.stdout
    assert "level 0: 15C (off)" in result.stdout
    assert "level 7: 42C" in result.stdout


def test_scan_command_marks_target(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen: dict[str, object] = {}

    async def fake_scan(seconds, *, adapter_id, target_address):
        seen.update(seconds=seconds, adapter_id=adapter_id, target=target_address)
        return [
            (DetectedDevice("11:22:33:44:55:66", "Speaker"), False),
            (DetectedDevice(MAT_ADDRESS, "Heating Mat"), True),
        ]

    monkeypatch.setattr(cli, "scan_devices", fake_scan)
    config_file = tmp_path / "config.yaml"
    config_file.write_text("placeholder", encoding="utf-8")
    result = runner.invoke(cli.app, ["scan", "--seconds", "2", "--config", str(config_file)])
    assert result.exit_code == 0
    assert f"{MAT_ADDRESS} Heating Mat <- configured mat" in result.stdout
    assert "11:22:33:44:55:66 Speaker\n" in result.stdout
    assert seen == {"seconds": 2.0, "adapter_id": "hci0", "target": MAT_ADDRESS}


def test_scan_without_config(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_scan(seconds, *, adapter_id, target_address):
        assert target_address is None
        assert adapter_id == "hci1"
        return []

    monkeypatch.setattr(cli, "scan_devices", fake_scan)
    result = runner.invoke(cli.app, ["scan", "--adapter", "hci1"])
    assert result.exit_code == 0
    assert "No Bluetooth devices found" in result.stdout


def test_temp_command() -> None:
    result = runner.invoke(cli.app, ["temp", "32", "--timeout", "5"])
    assert result.exit_code == 0
    assert "Set level 3 (30C)" in result.stdout
    assert "temperature=30C heating=on timer=off" in result.stdout
    client = FakeClient.instances[0]
    assert client.calls == [("wait_ready", 5.0), ("refresh", None), ("temp", 32.0), ("stop", None)]


def test_timer_command() -> None:
    result = runner.invoke(cli.app, ["timer", "6"])
    assert result.exit_code == 0
    assert "Timer set to 6 h" in result.stdout
    assert "timer=6 h (40%)" in result.stdout


def test_power_command() -> None:
    result = runner.invoke(cli.app, ["power", "OFF"])
    assert result.exit_code == 0
    assert "Power already off" in result.stdout
    assert ("power", False) in FakeClient.instances[0].calls


def test_power_rejects_unknown_state() -> None:
    result = runner.invoke(cli.app, ["power", "maybe"])
    assert result.exit_code == 1
    assert "must be 'on' or 'off'" in result.stderr
    assert FakeClient.instances == []


def test_run_command_prints_snapshots() -> None:
    result = runner.invoke(cli.app, ["run", "--duration", "0"])
    assert result.exit_code == 0
    assert f"Watching Heating Mat ({MAT_ADDRESS}), variant stepped" in result.stdout
    assert "temperature=15C heating=off timer=off" in result.stdout


def test_connection_error_is_clean(monkeypatch: pytest.MonkeyPatch) -> None:
    class UnreachableClient(FakeClient):
        async def wait_ready(self, timeout: float | None = None) -> None:
            raise CommunicationError(f"Mat {MAT_ADDRESS} not ready after 30s")

    monkeypatch.setattr(cli, "Client", UnreachableClient)
    result = runner.invoke(cli.app, ["temp", "40"])
    assert result.exit_code == 1
    assert f"Error: Mat {MAT_ADDRESS} not ready after 30s" in result.stderr
    assert "Traceback" not in result.stdout


def test_configuration_error_is_clean(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(path=None):
        raise ConfigurationError("Configuration file /nowhere/config.yaml does not exist")

    monkeypatch.setattr(cli, "load_config", missing)
    result = runner.invoke(cli.app, ["run"])
    assert result.exit_code == 1
    assert "Error: Configuration file /nowhere/config.yaml does not exist" in result.stderr
