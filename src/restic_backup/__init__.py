"""Scheduled restic backups with count-based repository maintenance."""

from __future__ import annotations

from .config import BackupConfig, ConfigurationError, load_config  # noqa: F401
from .orchestrator import BackupOrchestrator, RunResult, build_orchestrator  # noqa: F401
