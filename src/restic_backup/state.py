from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOG = logging.getLogger(__name__)

LEGACY_COUNTER_KEY = "backupsSinceLastKnownPurge"


class StatePersistenceError(Exception):
    """Raised when the run state cannot be written."""


class StateFormatError(ValueError):
    """Raised when a state record does not match the expected schema."""


@dataclass
class RunState:
    """What previous runs left behind; used to decide when maintenance is due."""

    last_known_purge: datetime
    last_known_check: datetime
    last_update_check: datetime
    last_known_backup: Optional[datetime] = None
    backups_since_last_purge: int = 0

    @classmethod
    def default(cls, now: datetime) -> "RunState":
        return cls(
            last_known_purge=now,
            last_known_check=now,
            last_update_check=now,
        )

    def record_backup(self, when: datetime) -> None:
        self.last_known_backup = when
        self.backups_since_last_purge += 1

    def record_maintenance(self, when: datetime) -> None:
        self.last_known_purge = when
        self.last_known_check = when
        self.backups_since_last_purge = 0

    def maintenance_due(self, every_n_backups: int) -> bool:
        return self.backups_since_last_purge >= every_n_backups

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastKnownBackup": self.last_known_backup.isoformat() if self.last_known_backup else "",
            "lastKnownPurge": self.last_known_purge.isoformat(),
            "lastKnownCheck": self.last_known_check.isoformat(),
            "lastUpdateCheck": self.last_update_check.isoformat(),
            "backupsSinceLastPurge": self.backups_since_last_purge,
        }

    @classmethod
    def from_dict(cls, raw: Any, now: datetime) -> "RunState":
        """Builds a state from a decoded record.

        Missing timestamps fall back to ``now``; anything of the wrong shape
        raises ``StateFormatError``.
        """
        if not isinstance(raw, dict):
            raise StateFormatError(f"expected an object, got {type(raw).__name__}")

        counter = raw.get("backupsSinceLastPurge", raw.get(LEGACY_COUNTER_KEY, 0))
        if isinstance(counter, bool) or not isinstance(counter, int) or counter < 0:
            raise StateFormatError(f"invalid backup counter {counter!r}")

        return cls(
            last_known_backup=_parse_timestamp(raw.get("lastKnownBackup"), None),
            last_known_purge=_parse_timestamp(raw.get("lastKnownPurge"), now),
            last_known_check=_parse_timestamp(raw.get("lastKnownCheck"), now),
            last_update_check=_parse_timestamp(raw.get("lastUpdateCheck"), now),
            backups_since_last_purge=counter,
        )


def _parse_timestamp(value: Any, fallback: Optional[datetime]) -> Optional[datetime]:
    if value in (None, ""):
        return fallback
    if not isinstance(value, str):
        raise StateFormatError(f"invalid timestamp {value!r}")
    try:
        # ISO strings written by older javascript runs end in "Z".
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise StateFormatError(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StateStore:
    """JSON file holding the ``RunState`` between runs.

    Reading never fails: a missing or damaged file gives a fresh default
    state so a backup can always run. Writing is best-effort.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self, now: Optional[datetime] = None) -> RunState:
        now = now or datetime.now(timezone.utc)
        if not self.path.exists():
            LOG.info("No state file at %s; starting from defaults", self.path)
            return RunState.default(now)

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            state = RunState.from_dict(raw, now)
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            LOG.warning("Invalid state file %s (%s); resetting to default state", self.path, exc)
            return RunState.default(now)

        LOG.debug("Loaded state from %s", self.path)
        return state

    def save(self, state: RunState) -> bool:
        try:
            self._write(state)
        except StatePersistenceError as exc:
            LOG.error("%s", exc)
            return False
        LOG.info("Updated state file")
        return True

    def _write(self, state: RunState) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=self.path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state.to_dict(), fh, indent=2)
                fh.write("\n")
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StatePersistenceError(f"Could not write to {self.path}: {exc}") from exc
