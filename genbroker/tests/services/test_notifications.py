from __future__ import annotations

import pytest

from genbroker.app.services import notifications
from genbroker.app.services.notifications import (
    CREDIT_ALERT,
    DiscordDmNotifier,
    NotificationDispatcher,
    NotificationError,
    format_job_message,
)
from genbroker.app.services.queue import RetryPolicy


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: dict | None = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = b"{}" if payload is not None else b""

    def json(self):
        return self._payload


def test_completed_message_includes_result_and_refund() -> None:
    message = format_job_message(
        "job_1",
        "completed",
        {"result_url": "https://cdn.example.com/a.png", "credits_used": 25, "credits_refunded": 15},
    )

    assert message.splitlines() == [
        "Your generation `job_1` is ready!",
        "https://cdn.example.com/a.png",
        "Credits used: 25",
        "Credits refunded: 15",
    ]


def test_failed_and_cancelled_messages() -> None:
    failed = format_job_message("job_2", "failed", {"error": "provider down"})
    assert "Reason: provider down" in failed
    assert "returned" in failed

    assert format_job_message("job_3", "cancelled", {"credits_released": 40}).endswith("40 credits were returned.")
    assert format_job_message("job_3", "cancelled", {}) == "Your generation `job_3` was cancelled."


def test_credit_alert_message() -> None:
    message = format_job_message("-", CREDIT_ALERT, {"available": 12, "threshold": 100})
    assert "12 credits left" in message
    assert "threshold 100" in message


def test_dispatcher_delivers_queued_messages(dispatcher, notifier) -> None:
    assert dispatcher.notify("user-1", "job_1", "completed", {"credits_used": 5}) is True
    assert notifier.sent == []

    dispatcher.drain()

    assert notifier.messages_for("user-1") == ["Your generation `job_1` is ready!\nCredits used: 5"]


def test_dispatcher_retries_failed_delivery(notifier) -> None:
    notifier.failures = 2
    dispatcher = NotificationDispatcher(notifier, concurrency=1, retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0))

    dispatcher.notify("user-1", "job_1", "failed", {"error": "boom"})
    dispatcher.drain()

    assert notifier.attempts == 3
    assert len(notifier.messages_for("user-1")) == 1


def test_dispatcher_drops_after_final_attempt(notifier) -> None:
    notifier.failures = 5
    dispatcher = NotificationDispatcher(notifier, concurrency=1, retry_policy=RetryPolicy(max_attempts=2, backoff_seconds=0))

    dispatcher.notify("user-1", "job_1", "failed", {})
    dispatcher.drain()

    assert notifier.attempts == 2
    assert notifier.sent == []
    # Dropping is not a queue failure.
    assert dispatcher.queue.stats().completed == 1


def test_notify_never_raises_when_queue_is_stopped(dispatcher) -> None:
    dispatcher.start()
    dispatcher.stop(timeout=2)

    assert dispatcher.notify("user-1", "job_1", "completed") is False


def test_discord_notifier_requires_token() -> None:
    with pytest.raises(NotificationError):
        DiscordDmNotifier(token="")


def test_discord_notifier_opens_dm_and_posts(monkeypatch) -> None:
    calls = []

    def fake_request(method, url, headers=None, json=None, timeout=None):
        calls.append((method, url, headers["Authorization"], json))
        if url.endswith("/users/@me/channels"):
            return FakeResponse(payload={"id": "chan-9"})
        return FakeResponse(payload={"id": "msg-1"})

    monkeypatch.setattr(notifications.requests, "request", fake_request)
    notifier = DiscordDmNotifier(token="bot-token", api_base="https://discord.test/api/")

    notifier.send("42", "x" * 2500)

    assert calls[0] == ("POST", "https://discord.test/api/users/@me/channels", "Bot bot-token", {"recipient_id": "42"})
    assert calls[1][1] == "https://discord.test/api/channels/chan-9/messages"
    assert len(calls[1][3]["content"]) == 2000


def test_discord_notifier_raises_on_api_error(monkeypatch) -> None:
    monkeypatch.setattr(
        notifications.requests,
        "request",
        lambda *args, **kwargs: FakeResponse(status_code=403, text="Cannot send messages to this user"),
    )
    notifier = DiscordDmNotifier(token="bot-token", api_base="https://discord.test/api")

    with pytest.raises(NotificationError) as exc_info:
        notifier.send("42", "hello")
    assert "403" in str(exc_info.value)
