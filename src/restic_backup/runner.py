from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import IO, Callable, Dict, List, Mapping, Optional, Sequence

LOG = logging.getLogger(__name__)

LOW_PRIORITY_NICENESS = 10
WAIT_POLL_SECONDS = 0.5


class ExecutionError(Exception):
    """Raised when a command cannot be started at all."""

    def __init__(self, command: Sequence[str], reason: str) -> None:
        super().__init__(f"Could not execute {' '.join(command)}: {reason}")
        self.command = list(command)
        self.reason = reason


class NonZeroExit(Exception):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, outcome: "CommandOutcome") -> None:
        super().__init__(f"Command failed with exit status {outcome.returncode}: {' '.join(outcome.command)}")
        self.outcome = outcome


@dataclass
class CommandOutcome:
    command: List[str]
    returncode: int
    started_at: datetime
    duration: timedelta
    stderr_lines: List[str] = field(default_factory=list)
    stdout_line_count: int = 0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def has_warnings(self) -> bool:
        return bool(self.stderr_lines)


class ProcessRunner:
    """Runs one external command at a time, streaming its output into the log."""

    def __init__(self, low_priority: bool = False, logger: Optional[logging.Logger] = None) -> None:
        self._low_priority = low_priority
        self._log = logger or LOG
        self._active: Optional[subprocess.Popen] = None
        self._escalation: Optional[threading.Timer] = None
        self._lock = threading.RLock()

    @property
    def busy(self) -> bool:
        process = self._active
        return process is not None and process.poll() is None

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandOutcome:
        argv = [command, *args]
        self._log.info("Executing command: %s", " ".join(argv))

        started_at = datetime.now()
        try:
            process = subprocess.Popen(
                argv,
                env=self._build_env(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=os.name == "posix",
                preexec_fn=self._preexec(),
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ExecutionError(argv, exc.strerror or str(exc)) from exc
        except OSError as exc:
            raise ExecutionError(argv, str(exc)) from exc

        with self._lock:
            previous, self._active = self._active, process

        stderr_lines: List[str] = []
        stdout_counter = [0]

        def _on_stdout(line: str) -> None:
            stdout_counter[0] += 1
            self._log.info("%s", line)

        def _on_stderr(line: str) -> None:
            stderr_lines.append(line)
            self._log.warning("*** %s", line)

        readers = [
            threading.Thread(target=_pump, args=(process.stdout, _on_stdout), daemon=True),
            threading.Thread(target=_pump, args=(process.stderr, _on_stderr), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            returncode = _wait(process)
        finally:
            for reader in readers:
                reader.join(timeout=5)
            with self._lock:
                if self._active is process:
                    self._active = previous
                escalation, self._escalation = self._escalation, None
            if escalation is not None:
                escalation.cancel()

        outcome = CommandOutcome(
            command=argv,
            returncode=returncode,
            started_at=started_at,
            duration=datetime.now() - started_at,
            stderr_lines=stderr_lines,
            stdout_line_count=stdout_counter[0],
        )
        if not outcome.success:
            raise NonZeroExit(outcome)
        return outcome

    def capture(self, command: Sequence[str], env: Optional[Mapping[str, str]] = None) -> str:
        """Runs a short informational command and returns its stdout."""
        argv = list(command)
        started_at = datetime.now()
        try:
            completed = subprocess.run(
                argv,
                env=self._build_env(env),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                check=True,
            )
        except OSError as exc:
            raise ExecutionError(argv, exc.strerror or str(exc)) from exc
        except subprocess.CalledProcessError as exc:
            raise NonZeroExit(
                CommandOutcome(
                    command=argv,
                    returncode=exc.returncode,
                    started_at=started_at,
                    duration=datetime.now() - started_at,
                    stderr_lines=(exc.stderr or "").splitlines(),
                )
            ) from exc
        return completed.stdout

    def terminate_active(self, grace_seconds: float = 30) -> bool:
        """Asks the running child and everything it spawned to stop.

        Sends SIGTERM to the child's process group and schedules a SIGKILL
        for when the grace period runs out. The child is reaped by the
        ``run()`` call that started it, never here: this is called from
        signal handlers that interrupt that very ``wait()``.

        Returns False when nothing was running.
        """
        with self._lock:
            process = self._active
            if process is None or process.returncode is not None:
                return False
            if self._escalation is not None:
                return True

            self._log.warning("Terminating running command (pid %s)", process.pid)
            self._signal(process, signal.SIGTERM)
            escalation = threading.Timer(grace_seconds, self._kill, args=(process, grace_seconds))
            escalation.daemon = True
            self._escalation = escalation
        escalation.start()
        return True

    def _kill(self, process: subprocess.Popen, grace_seconds: float) -> None:
        if process.returncode is not None:
            return
        self._log.warning("Command did not exit within %ss; killing it", grace_seconds)
        self._signal(process, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)

    @staticmethod
    def _signal(process: subprocess.Popen, signum: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, signum)
            else:
                process.send_signal(signum)
        except (ProcessLookupError, PermissionError):
            pass

    @staticmethod
    def _build_env(extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
        env = os.environ.copy()
        if extra:
            env.update(extra)
        return env

    def _preexec(self) -> Optional[Callable[[], None]]:
        if not self._low_priority or not hasattr(os, "nice"):
            return None
        return _lower_priority


def _lower_priority() -> None:
    os.nice(LOW_PRIORITY_NICENESS)


def _wait(process: subprocess.Popen) -> int:
    # Timed waits keep returning to the interpreter so signal handlers run
    # even when the signal was delivered to another thread.
    while True:
        try:
            return process.wait(timeout=WAIT_POLL_SECONDS)
        except subprocess.TimeoutExpired:
            continue


def _pump(stream: Optional[IO[str]], sink: Callable[[str], None]) -> None:
    if stream is None:
        return
    with stream:
        for line in stream:
            line = line.rstrip("\r\n")
            if line:
                sink(line)
