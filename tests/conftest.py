from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from restic_backup.config import BackupConfig
from restic_backup.logger import ROOT_LOGGER
from restic_backup.runner import CommandOutcome, NonZeroExit

RUN_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_outcome(command: str, returncode: int = 0, stderr: Tuple[str, ...] = ()) -> CommandOutcome:
    return CommandOutcome(
        command=["restic", command],
        returncode=returncode,
        started_at=RUN_TIME,
        duration=timedelta(seconds=3),
        stderr_lines=list(stderr),
    )


class FakeRunner:
    def __init__(self) -> None:
        self.terminations = 0

    def terminate_active(self, grace_seconds: float = 30) -> bool:
        self.terminations += 1
        return True


class FakeEngine:
    """Stands in for ResticEngine; records every command it is asked to run."""

    def __init__(self) -> None:
        self.runner = FakeRunner()
        self.calls: List[str] = []
        self.forget_args: List[List[str]] = []
        self.failures: Dict[str, Exception] = {}
        self.warnings: Dict[str, Tuple[str, ...]] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.installed_version: Optional[tuple] = (0, 16, 0)
        self.updated = False

    def _call(self, name: str) -> CommandOutcome:
        self.calls.append(name)
        hook = self.hooks.get(name)
        if hook:
            hook()
        if name in self.failures:
            raise self.failures[name]
        return make_outcome(name, stderr=self.warnings.get(name, ()))

    def fail(self, name: str, returncode: int = 1) -> None:
        self.failures[name] = NonZeroExit(make_outcome(name, returncode=returncode))

    def unlock(self) -> CommandOutcome:
        return self._call("unlock")

    def backup(self, tag, selection) -> CommandOutcome:
        return self._call("backup")

    def forget(self, tag, retention) -> CommandOutcome:
        self.forget_args.append(["--tag", tag, *retention.forget_arguments()])
        return self._call("forget")

    def prune(self) -> CommandOutcome:
        return self._call("prune")

    def check(self) -> CommandOutcome:
        return self._call("check")

    def version(self) -> Optional[tuple]:
        return self.installed_version

    def self_update(self) -> CommandOutcome:
        self.updated = True
        return self._call("self-update")


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []

    def notify(self, message: str, title: str) -> None:
        self.messages.append((title, message))

    def titled(self, title: str) -> List[str]:
        return [message for t, message in self.messages if t == title]


def build_config(tmp_path: Path, **overrides) -> BackupConfig:
    data_dir = tmp_path / "data"
    data_dir.mkdir(exist_ok=True)
    raw = {
        "repository": {
            "uri": {"value": "s3:https://minio.example.com/backups"},
            "access_key_id": {"value": "access"},
            "secret_access_key": {"value": "secret"},
            "password": {"value": "hunter2"},
        },
        "backup": {"tag": "home-main", "paths": [str(data_dir)], "platform_excludes": False},
        "retention": {
            "hourly": 0,
            "daily": 7,
            "weekly": 4,
            "monthly": 0,
            "yearly": 0,
            "maintenance_every_n_backups": 3,
        },
        "engine": {"update_check": False},
        "state_dir": str(tmp_path / "state"),
        "logging": {"file": None},
        "notifications": {"desktop": False},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(raw.get(key), dict):
            raw[key] = {**raw[key], **value}
        else:
            raw[key] = value
    return BackupConfig.model_validate(raw)


@pytest.fixture
def config(tmp_path: Path) -> BackupConfig:
    return build_config(tmp_path)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
