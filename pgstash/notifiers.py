"""
Notifications for backup events.

NotifierStore fans each event out to every enabled notifier. A failing
notifier is logged and does not stop the others.
"""

import logging
from abc import ABC, abstractmethod
from typing import List

import requests

from pgstash import PROGRAM_IDENTIFIER
from pgstash.config import Config


logger = logging.getLogger(__name__)

SUCCESS_COLOR = 1498748
FAILURE_COLOR = 14554702
DELETION_FAILURE_COLOR = 14590998


class NotifiersDisabledError(Exception):
    """Raised when notifications are globally disabled."""

    def __init__(self):
        super().__init__("notifiers are disabled")


class NotificationError(Exception):
    """Raised when a notification cannot be delivered."""
    pass


class Notifier(ABC):
    """Interface every notifier implements."""

    @abstractmethod
    def enabled(self) -> bool:
        """Whether this notifier should receive events."""

    @abstractmethod
    def notify_backup_success(self, databases: int, key: str):
        """Report a backup uploaded under key."""

    @abstractmethod
    def notify_backup_failure(self, error: Exception):
        """Report a backup that could not be created."""

    @abstractmethod
    def notify_backup_delete_failure(self, error: Exception):
        """Report a retention run that could not finish."""


class DiscordNotifier(Notifier):
    """Sends notifications to a Discord channel via webhook."""

    def __init__(self, webhook_url: str, instance_id: str, enabled: bool = True, timeout: float = 10, session=None):
        self.webhook_url = webhook_url
        self.instance_id = instance_id
        self._enabled = enabled
        self.timeout = timeout
        self.session = session or requests.Session()

    def enabled(self) -> bool:
        return self._enabled

    def _send(self, message: dict):
        try:
            response = self.session.post(self.webhook_url, json=message, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"Discord webhook failed: {e}")

    def _message(self, content: str, embed: dict) -> dict:
        return {
            'username': PROGRAM_IDENTIFIER,
            'content': f"{content} - *{self.instance_id}*",
            'embeds': [embed],
            'components': [],
        }

    def notify_backup_success(self, databases: int, key: str):
        self._send(self._message('**PG-DB Backup Successful**', {
            'color': SUCCESS_COLOR,
            'fields': [
                {'name': 'Key', 'value': key, 'inline': False},
                {'name': 'Databases', 'value': str(databases), 'inline': False},
            ],
        }))

    def notify_backup_failure(self, error: Exception):
        self._send(self._message('**PG-DB Backup Failed**', {
            'title': 'Error',
            'description': str(error),
            'color': FAILURE_COLOR,
        }))

    def notify_backup_delete_failure(self, error: Exception):
        self._send(self._message('**PG-DB Backup Deletion Failed**', {
            'title': 'Error',
            'description': str(error),
            'color': DELETION_FAILURE_COLOR,
        }))


class NotifierStore:
    """
    Manages multiple notifier implementations.
    """

    def __init__(self, enabled: bool):
        self._enabled = enabled
        self.store: List[Notifier] = []

    def register(self, notifier: Notifier):
        self.store.append(notifier)

    def enabled(self) -> bool:
        return self._enabled

    def _dispatch(self, event: str, *args):
        if not self.enabled():
            raise NotifiersDisabledError()

        for notifier in list(self.store):
            if not notifier.enabled():
                logger.debug(f"Notifier {type(notifier).__name__} disabled; skipping {event}")
                continue
            try:
                getattr(notifier, event)(*args)
            except Exception as e:
                logger.error(f"Failed to send {event} via {type(notifier).__name__}: {e}")

    def notify_backup_success(self, databases: int, key: str):
        self._dispatch('notify_backup_success', databases, key)

    def notify_backup_failure(self, error: Exception):
        self._dispatch('notify_backup_failure', error)

    def notify_backup_delete_failure(self, error: Exception):
        self._dispatch('notify_backup_delete_failure', error)


def create_notifier(config: Config) -> NotifierStore:
    """
    Build a NotifierStore with every configured notifier registered.
    """
    store = NotifierStore(enabled=config.notifiers.enabled)

    if config.notifiers.discord_webhook:
        store.register(DiscordNotifier(
            webhook_url=config.notifiers.discord_webhook,
            instance_id=config.app.instance_id,
            enabled=config.notifiers.discord_enabled
        ))

    return store
