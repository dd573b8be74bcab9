import json

import httpx
import pytest

from libsync.services import notifications
from libsync.services.notifications import (
    LoggingNotifier,
    NotificationKind,
    WebhookNotifier,
    build_notifier,
)


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_webhook_posts_json():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    notifier = WebhookNotifier("http://hooks.local/notify", client=_client(handler))
    notifier.notify(7, NotificationKind.LOAN_REMINDER, "Please return it")

    (request,) = seen
    assert request.method == "POST"
    assert json.loads(request.content) == {"student_id": 7, "kind": "loan_reminder", "message": "Please return it"}
    notifier.close()


def test_webhook_raises_on_error_status():
    notifier = WebhookNotifier("http://hooks.local/notify", client=_client(lambda r: httpx.Response(503)))
    with pytest.raises(httpx.HTTPStatusError):
        notifier.notify(1, NotificationKind.RESERVATION_READY, "Ready")


def test_build_notifier_defaults_to_logging(monkeypatch):
    monkeypatch.setattr(notifications.settings, "notify_webhook_url", None)
    assert isinstance(build_notifier(), LoggingNotifier)


def test_build_notifier_uses_webhook_when_configured(monkeypatch):
    monkeypatch.setattr(notifications.settings, "notify_webhook_url", "http://hooks.local/notify")
    notifier = build_notifier()
    assert isinstance(notifier, WebhookNotifier)
    notifier.close()


def test_logging_notifier(caplog):
    with caplog.at_level("INFO", logger="libsync.services.notifications"):
        LoggingNotifier().notify(3, NotificationKind.RESERVATION_READY, "Ready")
    assert "Notify student 3 [reservation_ready]: Ready" in caplog.text
