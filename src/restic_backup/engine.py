from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import BackupSelection, RetentionPolicy
from .runner import CommandOutcome, ExecutionError, NonZeroExit, ProcessRunner

LOG = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)\.(\d+)")


class EngineNotFoundError(Exception):
    """Raised when the restic executable cannot be located."""


def locate_engine(binary: str, search_path: Sequence[Path] = ()) -> Path:
    path = os.pathsep.join(str(item) for item in search_path) if search_path else None
    found = shutil.which(binary, path=path)
    if not found:
        where = path or os.environ.get("PATH", "")
        raise EngineNotFoundError(f"Backup engine '{binary}' not found on search path: {where}")
    return Path(found)


def parse_version(text: str) -> Optional[tuple]:
    match = VERSION_PATTERN.search(text)
    if not match:
        return None
    return tuple(int(part) for part in match.groups())


class ResticEngine:
    """Thin command builder around the restic CLI.

    Every call goes through the shared ``ProcessRunner`` so that output is
    streamed to the log and a running command can be cancelled.
    """

    def __init__(self, executable: Path, runner: ProcessRunner, environment: Dict[str, str]) -> None:
        self.executable = executable
        self._runner = runner
        self._env = dict(environment)

    @property
    def runner(self) -> ProcessRunner:
        return self._runner

    def _run(self, *args: str) -> CommandOutcome:
        return self._runner.run(str(self.executable), args, env=self._env)

    def unlock(self) -> CommandOutcome:
        return self._run("unlock")

    def backup(self, tag: str, selection: BackupSelection) -> CommandOutcome:
        return self._run(*self.backup_arguments(tag, selection))

    def forget(self, tag: str, retention: RetentionPolicy) -> CommandOutcome:
        return self._run("forget", "--tag", tag, *retention.forget_arguments())

    def prune(self) -> CommandOutcome:
        return self._run("prune")

    def check(self) -> CommandOutcome:
        return self._run("check")

    def version(self) -> Optional[tuple]:
        """Returns the installed engine version as a ``(major, minor, patch)`` tuple."""
        command = [str(self.executable), "version"]
        LOG.debug("Executing command: %s", " ".join(command))
        try:
            completed = self._runner.capture(command, env=self._env)
        except (ExecutionError, NonZeroExit) as exc:
            LOG.warning("Could not read installed engine version: %s", exc)
            return None
        version = parse_version(completed)
        if version:
            LOG.info("Got installed restic version: %s", ".".join(map(str, version)))
        return version

    def self_update(self) -> CommandOutcome:
        return self._run("self-update")

    @staticmethod
    def backup_arguments(tag: str, selection: BackupSelection) -> List[str]:
        args = ["backup", "--tag", tag, "--verbose"]
        for exclude_file in selection.exclude_files:
            args.extend(["--exclude-file", str(exclude_file)])
        for exclude in selection.all_excludes():
            args.extend(["--exclude", exclude])
        args.extend(str(path) for path in selection.paths)
        return args
