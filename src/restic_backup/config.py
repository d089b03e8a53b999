from __future__ import annotations

import getpass
import logging
import os
import plistlib
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import keyring
import yaml
from croniter import CroniterBadCronError, croniter
from keyring.errors import KeyringError
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

LOG = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("~/.restic")
MACOS_STD_EXCLUSIONS = Path("/System/Library/CoreServices/backupd.bundle/Contents/Resources/StdExclusions.plist")


class ConfigurationError(Exception):
    """Raised when the backup configuration is invalid."""


class KeyringRef(BaseModel):
    service: str
    username: Optional[str] = Field(default=None, description="Account name; defaults to the current user.")


class SecretRef(BaseModel):
    """Reference to a secret stored inline, in an environment variable, a file or the platform keyring."""

    value: Optional[str] = Field(default=None, description="Explicit secret string (discouraged).")
    env: Optional[str] = Field(default=None, description="Environment variable name.")
    file: Optional[Path] = Field(default=None, description="Path to a file containing the secret.")
    keyring: Optional[KeyringRef] = Field(default=None, description="Platform secret-store entry.")

    def resolve(self) -> Optional[str]:
        if self.value:
            return self.value
        if self.env:
            value = os.getenv(self.env)
            if value:
                return value
        if self.file:
            file_path = Path(self.file).expanduser()
            if file_path.exists():
                try:
                    value = file_path.read_text(encoding="utf-8").strip()
                except (OSError, UnicodeDecodeError) as exc:
                    LOG.warning("Could not read secret file %s: %s", file_path, exc)
                else:
                    if value:
                        return value
        if self.keyring:
            username = self.keyring.username or getpass.getuser()
            try:
                value = keyring.get_password(self.keyring.service, username)
            except KeyringError as exc:
                LOG.warning("Keyring lookup for %s failed: %s", self.keyring.service, exc)
                return None
            if value:
                return value
        return None

    def describe(self) -> str:
        sources = []
        if self.env:
            sources.append(f"env {self.env}")
        if self.file:
            sources.append(f"file {self.file}")
        if self.keyring:
            sources.append(f"keyring service {self.keyring.service}")
        return ", ".join(sources) or "inline value"


# --- Repository --------------------------------------------------------------


class RepositoryConfig(BaseModel):
    uri: SecretRef = SecretRef(env="RESTIC_REPOSITORY")
    access_key_id: SecretRef = SecretRef(env="AWS_ACCESS_KEY_ID")
    secret_access_key: SecretRef = SecretRef(env="AWS_SECRET_ACCESS_KEY")
    password: SecretRef = SecretRef(env="RESTIC_PASSWORD")

    def resolve_environment(self) -> Dict[str, str]:
        """Returns the engine environment, failing on any missing credential."""
        names = {
            "RESTIC_REPOSITORY": self.uri,
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "RESTIC_PASSWORD": self.password,
        }
        resolved: Dict[str, str] = {}
        missing: List[str] = []
        for name, ref in names.items():
            value = ref.resolve()
            if value:
                resolved[name] = value
            else:
                missing.append(f"{name} ({ref.describe()})")
        if missing:
            raise ConfigurationError("Could not resolve repository settings: " + "; ".join(missing))
        return resolved


# --- Backup selection --------------------------------------------------------


def _expand_existing(values: List[Path], kind: str) -> List[Path]:
    expanded = []
    for value in values:
        path = Path(value).expanduser()
        if not path.exists():
            raise ValueError(f"{kind} does not exist: {path}")
        expanded.append(path)
    return expanded


class BackupSelection(BaseModel):
    model_config = {"validate_default": True}

    tag: str = "home-main"
    paths: List[Path] = Field(default_factory=lambda: [Path("~/")])
    exclude_paths: List[Path] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)
    exclude_files: List[Path] = Field(default_factory=list)
    platform_excludes: bool = True

    @field_validator("tag")
    @classmethod
    def _require_tag(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Backup tag must not be empty.")
        return value.strip()

    @field_validator("paths")
    @classmethod
    def _validate_paths(cls, value: List[Path]) -> List[Path]:
        if not value:
            raise ValueError("At least one backup path must be configured.")
        return _expand_existing(value, "Backup path")

    @field_validator("exclude_paths")
    @classmethod
    def _validate_exclude_paths(cls, value: List[Path]) -> List[Path]:
        return _expand_existing(value, "Exclude path")

    @field_validator("exclude_files")
    @classmethod
    def _validate_exclude_files(cls, value: List[Path]) -> List[Path]:
        return _expand_existing(value, "Exclude file")

    def all_excludes(self) -> List[str]:
        excludes = [str(path) for path in self.exclude_paths] + list(self.exclude_patterns)
        if self.platform_excludes:
            for entry in platform_default_excludes():
                if entry not in excludes:
                    excludes.append(entry)
        return excludes


def platform_default_excludes(platform: Optional[str] = None) -> List[str]:
    """Returns the operating system's own list of user paths not worth backing up."""
    platform = platform or sys.platform
    if platform != "darwin":
        return []

    try:
        with MACOS_STD_EXCLUSIONS.open("rb") as fh:
            exclusions = plistlib.load(fh)
    except (OSError, plistlib.InvalidFileException) as exc:
        LOG.warning("Could not get excludes for platform %s: %s", platform, exc)
        return []

    home = Path.home()
    return [str(home / entry) for entry in exclusions.get("UserPathsExcluded", [])]


# --- Retention ---------------------------------------------------------------


class RetentionPolicy(BaseModel):
    model_config = {"frozen": True}

    hourly: int = Field(default=48, ge=0)
    daily: int = Field(default=14, ge=0)
    weekly: int = Field(default=16, ge=0)
    monthly: int = Field(default=18, ge=0)
    yearly: int = Field(default=3, ge=0)
    maintenance_every_n_backups: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def _require_some_retention(self) -> "RetentionPolicy":
        if not any((self.hourly, self.daily, self.weekly, self.monthly, self.yearly)):
            raise ValueError("Retention policy would forget every snapshot; keep at least one tier.")
        return self

    def forget_arguments(self) -> List[str]:
        args: List[str] = []
        for tier in ("hourly", "daily", "weekly", "monthly", "yearly"):
            count = getattr(self, tier)
            if count:
                args.extend([f"--keep-{tier}", str(count)])
        return args


# --- Engine ------------------------------------------------------------------


class EngineConfig(BaseModel):
    binary: str = "restic"
    search_path: List[Path] = Field(default_factory=list)
    low_priority: bool = False
    auto_update: bool = False
    update_check: bool = True
    update_check_interval_hours: float = Field(default=24, ge=0)
    update_check_timeout: float = Field(default=15, gt=0)
    terminate_grace_seconds: float = Field(default=30, ge=0)

    @field_validator("search_path")
    @classmethod
    def _expand_search_path(cls, value: List[Path]) -> List[Path]:
        return [Path(item).expanduser() for item in value]


class LoggingConfig(BaseModel):
    model_config = {"validate_default": True}

    level: str = "INFO"
    file: Optional[Path] = DEFAULT_STATE_DIR / "backup.log"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level '{value}'")
        return level

    @field_validator("file")
    @classmethod
    def _expand_file(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value else None


class NotificationsConfig(BaseModel):
    desktop: bool = True
    slack_webhook_env: Optional[str] = None

    def resolve_slack_webhook(self) -> Optional[str]:
        if not self.slack_webhook_env:
            return None
        return os.getenv(self.slack_webhook_env)


class SchedulerConfig(BaseModel):
    cron: str
    timezone: str = "UTC"
    run_on_startup: bool = True

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        try:
            croniter(value, datetime.now())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


class BackupConfig(BaseModel):
    model_config = {"validate_default": True}

    repository: RepositoryConfig = RepositoryConfig()
    backup: BackupSelection = Field(default_factory=BackupSelection)
    retention: RetentionPolicy = RetentionPolicy()
    engine: EngineConfig = EngineConfig()
    state_dir: Path = DEFAULT_STATE_DIR
    logging: LoggingConfig = LoggingConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    scheduler: Optional[SchedulerConfig] = None

    @field_validator("state_dir")
    @classmethod
    def _expand_state_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"


def load_config(path: Path, *, resolve_secrets: bool = True) -> BackupConfig:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as fh:
            raw: Any = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Could not read {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration root must be a mapping, got {type(raw).__name__}")

    try:
        config = BackupConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

    if resolve_secrets:
        config.repository.resolve_environment()
    return config
