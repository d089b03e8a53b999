from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from typing import List, Optional, Protocol, Sequence

import requests

from .config import NotificationsConfig

LOG = logging.getLogger(__name__)

NOTIFICATION_GROUP = "resticbackup"
COMMAND_TIMEOUT = 10
WEBHOOK_TIMEOUT = 10


class NotificationError(Exception):
    """Raised when a notification channel fails to deliver a message."""


class Notifier(Protocol):
    def notify(self, message: str, title: str) -> None:
        ...


class NullNotifier:
    """Used when the platform offers no notification facility."""

    def notify(self, message: str, title: str) -> None:
        return None


def _applescript_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


class DesktopNotifier:
    """Sends desktop notifications through one platform command."""

    def __init__(self, program: str, executable: str) -> None:
        self.program = program
        self.executable = executable

    def build_command(self, message: str, title: str) -> List[str]:
        if self.program == "terminal-notifier":
            return [self.executable, "-group", NOTIFICATION_GROUP, "-title", title, "-message", message]
        if self.program == "osascript":
            script = f'display notification "{_applescript_escape(message)}" with title "{_applescript_escape(title)}"'
            return [self.executable, "-e", script]
        return [self.executable, "--app-name", "restic-backup", title, message]

    def notify(self, message: str, title: str) -> None:
        try:
            subprocess.run(
                self.build_command(message, title),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=COMMAND_TIMEOUT,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise NotificationError(f"{self.program} failed: {exc}") from exc


class WebhookNotifier:
    """Posts messages to a Slack-compatible incoming webhook."""

    def __init__(self, url: str, session: Optional[requests.Session] = None) -> None:
        self._url = url
        self._session = session or requests.Session()

    def notify(self, message: str, title: str) -> None:
        try:
            response = self._session.post(self._url, json={"text": f"*{title}*: {message}"}, timeout=WEBHOOK_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise NotificationError(f"Webhook delivery failed: {exc}") from exc


class CompositeNotifier:
    """Fans a notification out to every channel and logs it once.

    Channel failures are logged and never reach the caller.
    """

    def __init__(self, channels: Sequence[Notifier], logger: Optional[logging.Logger] = None) -> None:
        self.channels = list(channels)
        self._log = logger or LOG

    def notify(self, message: str, title: str) -> None:
        self._log.info("%s: %s", title, message)
        for channel in self.channels:
            try:
                channel.notify(message, title)
            except NotificationError as exc:
                self._log.warning("Notification not delivered: %s", exc)


def find_desktop_notifier(platform: Optional[str] = None) -> Optional[DesktopNotifier]:
    platform = platform or sys.platform
    if platform == "darwin":
        candidates = ["terminal-notifier", "osascript"]
    elif platform.startswith("linux") or platform.startswith("freebsd"):
        candidates = ["notify-send"]
    else:
        candidates = []

    for program in candidates:
        executable = shutil.which(program)
        if executable:
            return DesktopNotifier(program, executable)
    return None


def resolve_notifier(config: NotificationsConfig, platform: Optional[str] = None) -> CompositeNotifier:
    """Picks the available notification channels once, at start-up."""
    channels: List[Notifier] = []

    if config.desktop:
        desktop = find_desktop_notifier(platform)
        if desktop:
            LOG.debug("Desktop notifications via %s", desktop.program)
            channels.append(desktop)
        else:
            LOG.debug("No desktop notification facility found; notifications go to the log only")

    webhook = config.resolve_slack_webhook()
    if webhook:
        channels.append(WebhookNotifier(webhook))
    elif config.slack_webhook_env:
        LOG.warning("Environment variable %s is not set; webhook notifications disabled", config.slack_webhook_env)

    if not channels:
        channels.append(NullNotifier())
    return CompositeNotifier(channels)
