import logging
from enum import Enum
from typing import Optional

import httpx

from libsync.config import settings

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    RESERVATION_READY = "reservation_ready"
    LOAN_REMINDER = "loan_reminder"


class Notifier:
    """Fire-and-forget signal to a student. Implementations may raise; callers never roll back on it."""

    def notify(self, student_id: int, kind: NotificationKind, message: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class LoggingNotifier(Notifier):
    """Default notifier: writes the signal to the log only."""

    def notify(self, student_id: int, kind: NotificationKind, message: str) -> None:
        logger.info("Notify student %s [%s]: %s", student_id, kind.value, message)


class WebhookNotifier(Notifier):
    """POST each signal as JSON to a webhook (push gateway, mailer relay...)."""

    def __init__(self, url: str, timeout: Optional[float] = None,
                 client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout or settings.notify_timeout),
            follow_redirects=True,
        )

    def notify(self, student_id: int, kind: NotificationKind, message: str) -> None:
        response = self._client.post(
            self.url,
            json={"student_id": student_id, "kind": kind.value, "message": message},
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def build_notifier() -> Notifier:
    """Pick the notifier from settings: webhook when NOTIFY_WEBHOOK_URL is set, else logging."""
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return LoggingNotifier()
