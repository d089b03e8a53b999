from __future__ import annotations

import json
import signal
from pathlib import Path

import pytest
import yaml
from conftest import RUN_TIME, FakeEngine, RecordingNotifier, build_config

from restic_backup import cli
from restic_backup.orchestrator import BackupOrchestrator
from restic_backup.state import StateStore


@pytest.fixture
def quiet_notifications(monkeypatch):
    notifier = RecordingNotifier()
    monkeypatch.setattr(cli, "resolve_notifier", lambda *_args, **_kwargs: notifier)
    return notifier


def _config_file(tmp_path: Path, **extra) -> Path:
    data_dir = tmp_path / "data"
    data_dir.mkdir(exist_ok=True)
    raw = {
        "repository": {
            "uri": {"value": "s3:https://minio.example.com/backups"},
            "access_key_id": {"value": "access"},
            "secret_access_key": {"value": "secret"},
            "password": {"value": "hunter2"},
        },
        "backup": {"paths": [str(data_dir)], "platform_excludes": False},
        "state_dir": str(tmp_path / "state"),
        "logging": {"file": str(tmp_path / "backup.log")},
        "notifications": {"desktop": False},
        **extra,
    }
    path = tmp_path / "restic-backup.yaml"
    path.write_text(yaml.safe_dump(raw), encoding="utf-8")
    return path


def test_invalid_configuration_exits_before_engine(tmp_path: Path, quiet_notifications):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--config", str(tmp_path / "missing.yaml")])

    assert excinfo.value.code == 1
    assert quiet_notifications.titled("Backup Configuration")


def test_missing_engine_is_fatal(tmp_path: Path, quiet_notifications):
    path = _config_file(tmp_path, engine={"binary": "restic-not-installed", "search_path": [str(tmp_path)]})

    assert cli.main(["--config", str(path)]) == 1
    assert "not found" in quiet_notifications.titled("Backup Configuration")[0]


def test_show_state_prints_json(tmp_path: Path, capsys, quiet_notifications):
    path = _config_file(tmp_path)
    state = StateStore(tmp_path / "state" / "state.json").load(RUN_TIME)
    state.record_backup(RUN_TIME)
    StateStore(tmp_path / "state" / "state.json").save(state)
    capsys.readouterr()

    assert cli.main(["--config", str(path), "--show-state"]) == 0

    out = capsys.readouterr().out
    printed = json.loads(out[out.index("{"):])
    assert printed["backupsSinceLastPurge"] == 1


def _factory(engine: FakeEngine, notifier: RecordingNotifier):
    def _build(config):
        return BackupOrchestrator(
            config=config,
            engine=engine,
            store=StateStore(config.state_file),
            notifier=notifier,
            clock=lambda: RUN_TIME,
        )

    return _build


def test_run_once_exit_codes(tmp_path: Path):
    config = build_config(tmp_path)
    engine, notifier = FakeEngine(), RecordingNotifier()

    assert cli.run_once(config, factory=_factory(engine, notifier)) == 0

    engine.fail("backup")
    assert cli.run_once(config, factory=_factory(engine, notifier)) == 1


def test_run_once_restores_signal_handlers(tmp_path: Path):
    config = build_config(tmp_path)
    before = signal.getsignal(signal.SIGTERM)

    cli.run_once(config, factory=_factory(FakeEngine(), RecordingNotifier()))

    assert signal.getsignal(signal.SIGTERM) == before


def test_scheduler_stops_when_scheduler_removed(tmp_path: Path):
    path = _config_file(tmp_path)
    config = build_config(tmp_path, scheduler={"cron": "0 * * * *", "run_on_startup": True})
    engine = FakeEngine()

    exit_code = cli.run_with_scheduler(
        config_path=path,
        initial_config=config,
        factory=_factory(engine, RecordingNotifier()),
    )

    assert exit_code == 0
    assert engine.calls == []
