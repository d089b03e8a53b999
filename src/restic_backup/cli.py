from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

from croniter import croniter
from zoneinfo import ZoneInfo

from .config import BackupConfig, ConfigurationError, NotificationsConfig, SchedulerConfig, load_config
from .engine import EngineNotFoundError
from .logger import configure_logging, get_logger
from .notifier import resolve_notifier
from .orchestrator import BackupOrchestrator, RunCancelled, build_orchestrator
from .state import StateStore

LOG = get_logger(__name__)

DEFAULT_CONFIG_PATH = "~/.restic/restic-backup.yaml"

OrchestratorFactory = Callable[[BackupConfig], BackupOrchestrator]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run restic backups with count-based maintenance.")
    parser.add_argument(
        "--config",
        default=os.getenv("RESTIC_BACKUP_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration YAML file.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL"),
        help="Log level; overrides the configuration file.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single backup even when a scheduler is configured.",
    )
    parser.add_argument(
        "--show-state",
        action="store_true",
        help="Print the persisted run state and exit.",
    )
    return parser.parse_args(argv)


def load_configuration(path: Path, *, exit_on_error: bool = True) -> BackupConfig:
    try:
        return load_config(path)
    except ConfigurationError as exc:
        if exit_on_error:
            _report_configuration_error(exc)
            raise SystemExit(1) from exc
        raise


def _report_configuration_error(exc: Exception) -> None:
    configure_logging("INFO")
    LOG.error("Configuration error: %s", exc)
    resolve_notifier(NotificationsConfig()).notify(str(exc), "Backup Configuration")


def show_state(config: BackupConfig) -> int:
    state = StateStore(config.state_file).load()
    print(json.dumps(state.to_dict(), indent=2))
    return 0


def run_once(config: BackupConfig, factory: OrchestratorFactory = build_orchestrator) -> int:
    orchestrator = factory(config)
    previous = _install_signal_handlers(orchestrator.handle_signal)
    try:
        result = orchestrator.run()
    except RunCancelled as exc:
        LOG.error("%s", exc)
        return 1
    finally:
        _restore_signal_handlers(previous)

    if result.success:
        LOG.info("Backup run finished: %s (maintenance %s)", result.phase.value, result.maintenance)
    else:
        LOG.error("Backup run failed: %s", "; ".join(result.errors) or result.phase.value)
    return result.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    config_path = Path(args.config).expanduser()
    config = load_configuration(config_path)
    configure_logging(args.log_level or config.logging.level, config.logging.file)

    if args.show_state:
        return show_state(config)

    try:
        if config.scheduler and not args.once:
            return run_with_scheduler(
                config_path=config_path,
                initial_config=config,
                log_level=args.log_level,
            )
        return run_once(config)
    except (ConfigurationError, EngineNotFoundError) as exc:
        LOG.error("%s", exc)
        resolve_notifier(config.notifications).notify(str(exc), "Backup Configuration")
        return 1


def run_with_scheduler(
    config_path: Path,
    initial_config: BackupConfig,
    log_level: Optional[str] = None,
    factory: OrchestratorFactory = build_orchestrator,
) -> int:
    stop_event = threading.Event()
    active: dict = {"orchestrator": None}

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()
        orchestrator = active["orchestrator"]
        if orchestrator is not None and orchestrator.running:
            orchestrator.handle_signal(signum, frame)

    previous = _install_signal_handlers(_handle_signal)

    config = initial_config
    scheduler = _require_scheduler(config.scheduler)
    timezone = ZoneInfo(scheduler.timezone)
    next_run = datetime.now(timezone) if scheduler.run_on_startup else _next_run(scheduler.cron, datetime.now(timezone))

    if scheduler.run_on_startup:
        LOG.info("Executing initial run immediately")
    else:
        LOG.info("Next run scheduled for %s", next_run.isoformat())

    try:
        while not stop_event.is_set():
            now = datetime.now(timezone)
            if now >= next_run:
                try:
                    config = load_configuration(config_path, exit_on_error=False)
                except ConfigurationError as exc:
                    LOG.error("Failed to reload configuration: %s; continuing with previous settings", exc)
                else:
                    configure_logging(log_level or config.logging.level, config.logging.file)
                    if not config.scheduler:
                        LOG.info("Scheduler removed from configuration; exiting loop")
                        break
                    scheduler = _require_scheduler(config.scheduler)
                    timezone = ZoneInfo(scheduler.timezone)

                active["orchestrator"] = factory(config)
                try:
                    result = active["orchestrator"].run()
                finally:
                    active["orchestrator"] = None
                if not result.success:
                    LOG.warning("Scheduled run completed with errors (exit code %s)", result.exit_code)

                next_run = _next_run(scheduler.cron, datetime.now(timezone))
                LOG.info("Next run scheduled for %s", next_run.isoformat())
                continue

            sleep_for = max((next_run - now).total_seconds(), 0)
            stop_event.wait(min(sleep_for, 60))
    finally:
        _restore_signal_handlers(previous)

    LOG.info("Scheduler stopped")
    return 0


def _install_signal_handlers(handler: Callable[[int, Optional[object]], None]) -> dict:
    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, handler)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _require_scheduler(scheduler: Optional[SchedulerConfig]) -> SchedulerConfig:
    if not scheduler:
        raise ValueError("Scheduler configuration is required")
    return scheduler


def _next_run(cron_expression: str, reference: datetime) -> datetime:
    return croniter(cron_expression, reference).get_next(datetime)


if __name__ == "__main__":
    sys.exit(main())
