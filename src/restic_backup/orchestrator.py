from __future__ import annotations

import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .config import BackupConfig
from .engine import ResticEngine, locate_engine
from .logger import write_separator
from .notifier import Notifier, resolve_notifier
from .runner import CommandOutcome, ExecutionError, NonZeroExit, ProcessRunner
from .state import RunState, StateStore
from .updates import UpdateChecker

LOG = logging.getLogger(__name__)

Clock = Callable[[], datetime]

OK_MARK = "✅\U0001f44c"
FAIL_MARK = "❌⚠️"


class RunPhase(str, Enum):
    IDLE = "idle"
    UPDATE_CHECK = "update-check"
    UNLOCKING = "unlocking"
    BACKING_UP = "backing-up"
    BACKUP_FAILED = "backup-failed"
    BACKUP_SUCCEEDED = "backup-succeeded"
    FORGETTING = "forgetting"
    PRUNING = "pruning"
    CHECKING = "checking"
    MAINTENANCE_SUCCEEDED = "maintenance-succeeded"
    MAINTENANCE_FAILED = "maintenance-failed"
    CANCELLED = "cancelled"


class BackupExecutionError(Exception):
    """Raised when the backup command itself did not complete."""


class MaintenanceStepError(Exception):
    """Raised when forget, prune or check fails; the remaining steps are skipped."""

    def __init__(self, step: str, cause: Exception) -> None:
        super().__init__(f"Maintenance step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


class RunCancelled(Exception):
    """Raised from the signal handler to unwind an in-flight run."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"Run cancelled by {_signal_name(signum)}")
        self.signum = signum


@dataclass
class RunContext:
    """Everything one run needs, built at start and passed to each step."""

    config: BackupConfig
    started_at: datetime
    tag: str
    state: RunState
    phase: RunPhase = RunPhase.IDLE


@dataclass
class RunResult:
    started_at: datetime
    completed_at: Optional[datetime] = None
    phase: RunPhase = RunPhase.IDLE
    backup_succeeded: bool = False
    backup_warnings: bool = False
    maintenance: str = "skipped"
    failed_step: Optional[str] = None
    exit_code: int = 1
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def describe_duration(elapsed: timedelta) -> str:
    seconds = elapsed.total_seconds()
    if seconds > 120:
        return f"{round(seconds / 60)} minutes"
    return f"{round(seconds)} seconds"


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupOrchestrator:
    """Sequences one backup run and the maintenance that follows it.

    backup -> (maintenance due?) -> forget -> prune -> check

    A failed backup ends the run before any maintenance. A failed
    maintenance step skips the remaining steps and leaves the backup counter
    alone so the next run tries the whole sequence again.
    """

    def __init__(
        self,
        config: BackupConfig,
        engine: ResticEngine,
        store: StateStore,
        notifier: Notifier,
        update_checker: Optional[UpdateChecker] = None,
        clock: Clock = _utcnow,
    ) -> None:
        self._config = config
        self._engine = engine
        self._store = store
        self._notifier = notifier
        self._update_checker = update_checker
        self._clock = clock
        self._context: Optional[RunContext] = None
        self._cancelling = False
        self._cancel_signal: Optional[int] = None
        self._lock_released = False

    @property
    def running(self) -> bool:
        return self._context is not None

    @property
    def phase(self) -> RunPhase:
        return self._context.phase if self._context else RunPhase.IDLE

    def run(self) -> RunResult:
        started_at = self._clock()
        write_separator()
        LOG.info("Starting backup")

        self._cancelling = False
        self._cancel_signal = None
        self._lock_released = False
        context = RunContext(
            config=self._config,
            started_at=started_at,
            tag=self._config.backup.tag,
            state=self._store.load(started_at),
        )
        self._context = context
        result = RunResult(started_at=started_at)

        try:
            self._execute(context, result)
        except RunCancelled as exc:
            LOG.warning("%s during %s; releasing repository lock", exc, context.phase.value)
            self._release_lock()
            context.phase = RunPhase.CANCELLED
            result.exit_code = 1
            result.errors.append(str(exc))
            self._notifier.notify(f"{FAIL_MARK} {exc} ({context.tag})", "Backup Job")
        finally:
            self._context = None
            result.phase = context.phase
            result.completed_at = self._clock()
            LOG.info("Finished backup in %s", describe_duration(result.completed_at - started_at))
            write_separator()
        return result

    def handle_signal(self, signum: int, _frame: Optional[object]) -> None:
        """SIGINT/SIGTERM handler: stop the engine and unwind the run.

        With a command in flight the handler only asks it to stop and
        returns; the interrupted engine call then sees the request and
        raises ``RunCancelled``. ``run()`` releases the repository lock once
        the child is gone.
        """
        if self._cancelling:
            LOG.warning("Received %s while already stopping; ignoring", _signal_name(signum))
            return
        self._cancelling = True
        self._cancel_signal = signum
        if not self.running:
            raise RunCancelled(signum)

        LOG.warning("In exit hook, received %s; stopping", _signal_name(signum))
        if self._engine.runner.terminate_active(self._config.engine.terminate_grace_seconds):
            return
        raise RunCancelled(signum)

    def _raise_if_cancelled(self) -> None:
        if self._cancel_signal is not None:
            raise RunCancelled(self._cancel_signal)

    def _engine_call(self, action: Callable[[], CommandOutcome]) -> CommandOutcome:
        try:
            outcome = action()
        except (ExecutionError, NonZeroExit):
            self._raise_if_cancelled()
            raise
        self._raise_if_cancelled()
        return outcome

    # Steps -----------------------------------------------------------------
    def _execute(self, context: RunContext, result: RunResult) -> None:
        self._check_for_updates(context)
        self._clear_stale_lock(context)

        try:
            outcome = self._backup(context)
        except BackupExecutionError as exc:
            context.phase = RunPhase.BACKUP_FAILED
            result.errors.append(str(exc))
            result.exit_code = 1
            LOG.error("Backup failed with error: %s", exc)
            self._notifier.notify(f"{FAIL_MARK} Failed ({context.tag})", "Backup Job")
            return

        context.phase = RunPhase.BACKUP_SUCCEEDED
        result.backup_succeeded = True
        result.backup_warnings = outcome.has_warnings
        result.exit_code = 0

        context.state.record_backup(context.started_at)
        self._store.save(context.state)

        elapsed = describe_duration(self._clock() - context.started_at)
        if outcome.has_warnings:
            self._notifier.notify(f"{OK_MARK} Backup completed in {elapsed} with errors.", "Backup Job")
            if self._config.logging.file:
                LOG.warning("Check logs for errors: %s", self._config.logging.file)
        else:
            self._notifier.notify(f"{OK_MARK} Backup was successful in {elapsed}.", "Backup Job")

        policy = self._config.retention.maintenance_every_n_backups
        current = context.state.backups_since_last_purge
        if not context.state.maintenance_due(policy):
            LOG.info("Skipping backup maintenance. Policy: %s Current: %s.", policy, current)
            result.maintenance = "skipped"
            return

        self._notifier.notify("This will take a while.", "Starting Backup Maintenance")
        try:
            self._run_maintenance(context)
        except MaintenanceStepError as exc:
            context.phase = RunPhase.MAINTENANCE_FAILED
            result.maintenance = "failed"
            result.failed_step = exc.step
            result.errors.append(str(exc))
            LOG.error("%s", exc)
            self._notifier.notify(
                f"{FAIL_MARK} Maintenance failed at {exc.step}! Check the logs.",
                "Backup Maintenance",
            )
            return

        context.phase = RunPhase.MAINTENANCE_SUCCEEDED
        result.maintenance = "succeeded"
        self._notifier.notify(f"{OK_MARK} Maintenance completed", "Backup Maintenance")

    def _check_for_updates(self, context: RunContext) -> None:
        if not self._update_checker:
            return
        context.phase = RunPhase.UPDATE_CHECK
        self._update_checker.run(self._engine, context.state, self._notifier, context.started_at)
        self._raise_if_cancelled()

    def _clear_stale_lock(self, context: RunContext) -> None:
        context.phase = RunPhase.UNLOCKING
        try:
            self._engine_call(self._engine.unlock)
        except (ExecutionError, NonZeroExit) as exc:
            LOG.debug("Stale lock removal failed: %s", exc)

    def _backup(self, context: RunContext) -> CommandOutcome:
        context.phase = RunPhase.BACKING_UP
        try:
            return self._engine_call(lambda: self._engine.backup(context.tag, self._config.backup))
        except (ExecutionError, NonZeroExit) as exc:
            raise BackupExecutionError(str(exc)) from exc

    def _run_maintenance(self, context: RunContext) -> None:
        steps: List[Tuple[str, RunPhase, Callable[[], CommandOutcome]]] = [
            ("forget", RunPhase.FORGETTING, lambda: self._engine.forget(context.tag, self._config.retention)),
            ("prune", RunPhase.PRUNING, self._engine.prune),
            ("check", RunPhase.CHECKING, self._engine.check),
        ]
        for name, phase, action in steps:
            context.phase = phase
            LOG.info("Starting %s", name)
            try:
                outcome = self._engine_call(action)
            except (ExecutionError, NonZeroExit) as exc:
                raise MaintenanceStepError(name, exc) from exc
            LOG.info("%s completed in %s.", name.capitalize(), describe_duration(outcome.duration))

        context.state.record_maintenance(context.started_at)
        self._store.save(context.state)

    def _release_lock(self) -> None:
        if self._lock_released:
            return
        self._lock_released = True
        try:
            self._engine.unlock()
        except (ExecutionError, NonZeroExit) as exc:
            LOG.error("Could not release repository lock: %s", exc)


def build_orchestrator(config: BackupConfig) -> BackupOrchestrator:
    """Wires the production collaborators; raises on missing engine or credentials."""
    environment = config.repository.resolve_environment()
    executable = locate_engine(config.engine.binary, config.engine.search_path)
    runner = ProcessRunner(low_priority=config.engine.low_priority)
    engine = ResticEngine(executable, runner, environment)
    update_checker = UpdateChecker(config.engine) if config.engine.update_check else None
    return BackupOrchestrator(
        config=config,
        engine=engine,
        store=StateStore(config.state_file),
        notifier=resolve_notifier(config.notifications),
        update_checker=update_checker,
    )
