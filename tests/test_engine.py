from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest
from conftest import build_config, make_outcome

from restic_backup.engine import EngineNotFoundError, ResticEngine, locate_engine, parse_version
from restic_backup.runner import ExecutionError


class ArgvRunner:
    def __init__(self, version_output: str = "restic 0.16.4 compiled with go1.21.6 on linux/amd64") -> None:
        self.commands = []
        self.envs = []
        self._version_output = version_output

    def run(self, command, args=(), env=None):
        self.commands.append([command, *args])
        self.envs.append(env)
        return make_outcome(args[0] if args else command)

    def capture(self, command, env=None):
        if self._version_output is None:
            raise ExecutionError(command, "permission denied")
        return self._version_output


def _engine(runner) -> ResticEngine:
    return ResticEngine(Path("/usr/local/bin/restic"), runner, {"RESTIC_REPOSITORY": "s3:test"})


def test_backup_command_line(tmp_path: Path):
    exclude_dir = tmp_path / "data" / "cache"
    exclude_dir.mkdir(parents=True)
    exclude_file = tmp_path / ".backup_exclude"
    exclude_file.write_text("*.tmp\n", encoding="utf-8")
    config = build_config(
        tmp_path,
        backup={
            "exclude_paths": [str(exclude_dir)],
            "exclude_patterns": ["*.pyc"],
            "exclude_files": [str(exclude_file)],
        },
    )
    runner = ArgvRunner()

    _engine(runner).backup("home-main", config.backup)

    assert runner.commands == [
        [
            "/usr/local/bin/restic",
            "backup",
            "--tag",
            "home-main",
            "--verbose",
            "--exclude-file",
            str(exclude_file),
            "--exclude",
            str(exclude_dir),
            "--exclude",
            "*.pyc",
            str(tmp_path / "data"),
        ]
    ]
    assert runner.envs[0] == {"RESTIC_REPOSITORY": "s3:test"}


def test_maintenance_commands(tmp_path: Path):
    config = build_config(tmp_path)
    runner = ArgvRunner()
    engine = _engine(runner)

    engine.unlock()
    engine.forget("home-main", config.retention)
    engine.prune()
    engine.check()

    assert [command[1:] for command in runner.commands] == [
        ["unlock"],
        ["forget", "--tag", "home-main", "--keep-daily", "7", "--keep-weekly", "4"],
        ["prune"],
        ["check"],
    ]


def test_version_parsing():
    assert _engine(ArgvRunner()).version() == (0, 16, 4)
    assert _engine(ArgvRunner(version_output=None)).version() is None
    assert parse_version("v0.17.1") == (0, 17, 1)
    assert parse_version("unknown") is None


def test_locate_engine_on_search_path(tmp_path: Path):
    binary = tmp_path / "restic"
    binary.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    binary.chmod(binary.stat().st_mode | stat.S_IEXEC)

    assert locate_engine("restic", [tmp_path]) == binary


def test_locate_engine_missing(tmp_path: Path):
    with pytest.raises(EngineNotFoundError):
        locate_engine("restic-does-not-exist", [tmp_path])


@pytest.mark.skipif(os.name != "posix", reason="uses PATH lookup semantics of POSIX")
def test_locate_engine_falls_back_to_path(tmp_path: Path, monkeypatch):
    binary = tmp_path / "restic"
    binary.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    binary.chmod(0o755)
    monkeypatch.setenv("PATH", str(tmp_path))

    assert locate_engine("restic") == binary
