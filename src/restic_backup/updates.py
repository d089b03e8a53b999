from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import requests

from .config import EngineConfig
from .engine import ResticEngine, parse_version
from .notifier import Notifier
from .runner import ExecutionError, NonZeroExit
from .state import RunState

LOG = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
SOURCE_REPO = "restic/restic"


@dataclass
class ReleaseInfo:
    name: str
    version: tuple

    @property
    def label(self) -> str:
        return ".".join(str(part) for part in self.version)


class ReleaseFeed:
    """Reads the latest published engine release from GitHub."""

    def __init__(
        self,
        timeout: float,
        base_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "User-Agent": "restic-backup",
            }
        )

    def latest(self) -> Optional[ReleaseInfo]:
        url = f"{self._base_url}/repos/{SOURCE_REPO}/releases/latest"
        response = self._session.get(url, timeout=self._timeout)
        if response.status_code >= 400:
            LOG.warning("Release lookup failed: %s %s", response.status_code, response.text[:200])
            response.raise_for_status()

        payload: Dict[str, Any] = response.json()
        if not isinstance(payload, dict):
            LOG.warning("Unexpected release payload: %r", payload)
            return None
        name = payload.get("name") or payload.get("tag_name") or ""
        version = parse_version(payload.get("tag_name") or name)
        if not version:
            LOG.warning("Could not parse release version from %r", name)
            return None
        LOG.info("Got latest restic version: %s", name)
        return ReleaseInfo(name=name, version=version)


class UpdateChecker:
    """Compares the installed engine with the latest release.

    Entirely advisory: network problems are logged and never stop a backup.
    """

    def __init__(self, config: EngineConfig, feed: Optional[ReleaseFeed] = None) -> None:
        self._config = config
        self._feed = feed or ReleaseFeed(timeout=config.update_check_timeout)

    def due(self, state: RunState, now: datetime) -> bool:
        if not self._config.update_check:
            return False
        interval = timedelta(hours=self._config.update_check_interval_hours)
        return interval == timedelta(0) or now - state.last_update_check >= interval

    def run(self, engine: ResticEngine, state: RunState, notifier: Notifier, now: datetime) -> None:
        if not self.due(state, now):
            LOG.debug("Skipping update check; last check at %s", state.last_update_check.isoformat())
            return

        installed = engine.version()
        try:
            latest = self._feed.latest()
        except requests.Timeout:
            LOG.warning("Update check timed out after %ss", self._config.update_check_timeout)
            return
        except (requests.RequestException, ValueError) as exc:
            LOG.warning("Update check failed: %s", exc)
            return

        state.last_update_check = now
        if not installed or not latest or installed >= latest.version:
            return

        installed_label = ".".join(str(part) for part in installed)
        if not self._config.auto_update:
            notifier.notify(
                f"New version of restic is available: {latest.label}. You have: {installed_label}",
                "Restic Update Available",
            )
            return

        LOG.info("Updating restic %s -> %s", installed_label, latest.label)
        try:
            engine.self_update()
        except (ExecutionError, NonZeroExit) as exc:
            notifier.notify(f"Automatic update to {latest.label} failed: {exc}", "Restic Update")
            return
        notifier.notify(f"Updated restic to {latest.label}", "Restic Update")
