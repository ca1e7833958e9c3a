"""Notification configuration and dispatch for BorgPilot.

Delivery transports are pluggable senders. The dispatcher decides whether a
job outcome warrants a notification, composes the message and requests one
delivery per enabled channel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from loguru import logger
from pydantic import ValidationError

from borgpilot.config import DEFAULT_CONFIG_DIR, NOTIFICATIONS_FILE_NAME
from borgpilot.models import NotificationConfig
from borgpilot.persistence import safe_read_json_with_backup, write_json
from borgpilot.secrets import SMTP_PASSWORD_KEY, SecretStore

# Discord rejects embeds longer than this
MAX_MESSAGE_LENGTH = 2000


class Channel:
    """Notification channel constants."""

    DISCORD = "discord"
    EMAIL = "email"
    DESKTOP = "desktop"


@dataclass
class NotificationRequest:
    """A requested notification delivery."""

    channel: str
    title: str
    message: str
    success: bool
    created_at: datetime = field(default_factory=datetime.now)
    silent: bool = False


NotificationSender = Callable[[NotificationRequest], None]


def log_sender(request: NotificationRequest) -> None:
    """Default sender: record the delivery attempt in the log."""
    logger.info(f"Notification requested via {request.channel}: {request.title}")


def truncate_message(message: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Shorten a message to fit a channel's size limit."""
    if len(message) <= limit:
        return message
    return message[: limit - 10] + "\n... (Log truncated)"


class NotificationStore:
    """Persisted notification configuration (``notifications.json``)."""

    def __init__(self, path: Path | None = None, secrets: SecretStore | None = None):
        self.path = path or DEFAULT_CONFIG_DIR / NOTIFICATIONS_FILE_NAME
        self._secrets = secrets
        self._lock = Lock()
        self._config = self._load()

    def _load(self) -> NotificationConfig:
        raw = safe_read_json_with_backup(self.path, {})
        if not isinstance(raw, dict):
            return NotificationConfig()
        try:
            return NotificationConfig.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Invalid notification config {self.path}: {e}")
            return NotificationConfig()

    @property
    def config(self) -> NotificationConfig:
        return self._config

    def save(self, updates: dict[str, Any], smtp_password: str | None = None) -> NotificationConfig:
        """Merge updates into the config and persist it.

        The SMTP password goes to the secret store, never to this file.
        """
        with self._lock:
            merged = {**self._config.to_json_dict(), **updates}
            merged.pop("smtpPass", None)
            config = NotificationConfig.model_validate(merged)
            write_json(self.path, config.to_json_dict())
            self._config = config

        if smtp_password and self._secrets is not None:
            self._secrets.set_secret(SMTP_PASSWORD_KEY, smtp_password)
        return config

    def public_view(self) -> dict[str, Any]:
        """Config as exposed to clients, with a flag instead of the password."""
        view = self._config.to_json_dict()
        view["hasSmtpPass"] = bool(self._secrets and self._secrets.get_secret(SMTP_PASSWORD_KEY))
        return view


class NotificationDispatcher:
    """Turns job outcomes into notification requests."""

    def __init__(
        self,
        store: NotificationStore,
        senders: dict[str, NotificationSender] | None = None,
    ):
        self._store = store
        self._senders: dict[str, NotificationSender] = senders or {}
        self._default_sender: NotificationSender = log_sender

    def register_sender(self, channel: str, sender: NotificationSender) -> None:
        """Register the transport for a channel."""
        self._senders[channel] = sender

    def _enabled_channels(self, config: NotificationConfig) -> list[str]:
        channels = []
        if config.discord_enabled and config.discord_webhook:
            channels.append(Channel.DISCORD)
        if config.email_enabled and config.smtp_host:
            channels.append(Channel.EMAIL)
        return channels

    def _send(self, request: NotificationRequest) -> bool:
        sender = self._senders.get(request.channel, self._default_sender)
        try:
            sender(request)
            return True
        except Exception as e:
            logger.warning(f"Failed to deliver notification via {request.channel}: {e}")
            return False

    def dispatch(self, job_name: str, success: bool, details: str | None = None) -> list[NotificationRequest]:
        """Request notifications for a finished job.

        Returns:
            The requests that were handed to senders
        """
        config = self._store.config
        if success and not config.notify_on_success:
            return []
        if not success and not config.notify_on_error:
            return []

        status = "SUCCESS" if success else "FAILED"
        title = f"Backup {status}: {job_name}"
        if success:
            message = f"The backup job '{job_name}' completed successfully."
        else:
            message = f"The backup job '{job_name}' encountered errors."
        if details:
            message += f"\n\n--- LOG OUTPUT ---\n{details}"

        requests = []
        for channel in self._enabled_channels(config):
            body = truncate_message(message) if channel == Channel.DISCORD else message
            request = NotificationRequest(channel=channel, title=title, message=body, success=success)
            if self._send(request):
                requests.append(request)
        return requests

    def notice(self, title: str, body: str) -> NotificationRequest:
        """Request a low-priority desktop notice."""
        request = NotificationRequest(
            channel=Channel.DESKTOP,
            title=title,
            message=body,
            success=True,
            silent=True,
        )
        self._send(request)
        return request
