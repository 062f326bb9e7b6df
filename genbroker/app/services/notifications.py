"""Best-effort delivery of job outcome messages to users.

Delivery runs on its own queue so a slow or failing notifier never touches
job or credit state. Exhausted deliveries are logged and dropped.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict

import requests

from ..core.config import settings
from .queue import RetryPolicy, WorkQueue

logger = logging.getLogger(__name__)

CREDIT_ALERT = "credit_alert"


class NotificationError(RuntimeError):
    """Raised by a notifier when a message could not be delivered."""


class Notifier(ABC):
    @abstractmethod
    def send(self, user_id: str, message: str) -> None:
        """Deliver ``message`` to ``user_id``. Raise on failure."""
        pass


class LogNotifier(Notifier):
    """Writes messages to the log instead of delivering them (development)."""

    def send(self, user_id: str, message: str) -> None:
        logger.info("Notification", extra={"data": {"user_id": user_id, "message": message}})


class DiscordDmNotifier(Notifier):
    """
    Sends direct messages through the Discord REST API.
    """

    def __init__(self, token: str | None = None, api_base: str | None = None, timeout: float | None = None):
        self.token = token or settings.discord_bot_token
        self.api_base = (api_base or settings.discord_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.discord_timeout_seconds
        if not self.token:
            raise NotificationError("Discord bot token is required. Set DISCORD_BOT_TOKEN.")

    def send(self, user_id: str, message: str) -> None:
        channel = self._request("POST", "/users/@me/channels", {"recipient_id": user_id})
        channel_id = channel.get("id")
        if not channel_id:
            raise NotificationError(f"Discord did not open a DM channel for {user_id}")
        # Discord caps message content at 2000 characters.
        self._request("POST", f"/channels/{channel_id}/messages", {"content": message[:2000]})

    def _request(self, method: str, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = requests.request(
            method,
            f"{self.api_base}{path}",
            headers={"Authorization": f"Bot {self.token}", "Content-Type": "application/json"},
            json=body,
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            raise NotificationError(f"Discord API error {resp.status_code}: {resp.text[:200]}")
        return resp.json() if resp.content else {}


def format_job_message(job_id: str, status: str, payload: Dict[str, Any]) -> str:
    if status == "completed":
        lines = [f"Your generation `{job_id}` is ready!"]
        if payload.get("result_url"):
            lines.append(str(payload["result_url"]))
        if payload.get("credits_used") is not None:
            lines.append(f"Credits used: {payload['credits_used']}")
        if payload.get("credits_refunded"):
            lines.append(f"Credits refunded: {payload['credits_refunded']}")
        return "\n".join(lines)
    if status == "failed":
        lines = [f"Your generation `{job_id}` failed."]
        if payload.get("error"):
            lines.append(f"Reason: {payload['error']}")
        lines.append("Your reserved credits have been returned.")
        return "\n".join(lines)
    if status == "cancelled":
        released = payload.get("credits_released")
        suffix = f" {released} credits were returned." if released else ""
        return f"Your generation `{job_id}` was cancelled.{suffix}"
    if status == CREDIT_ALERT:
        return (
            f"Your credit balance is low: {payload.get('available', 0)} credits left "
            f"(threshold {payload.get('threshold', settings.low_balance_threshold)})."
        )
    return f"Update on `{job_id}`: {status}"


class NotificationDispatcher:
    """Queues notifications and delivers them with retries on a worker pool."""

    def __init__(
        self,
        notifier: Notifier,
        *,
        concurrency: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.notifier = notifier
        self.queue = WorkQueue(
            "notifications",
            self._deliver,
            concurrency=concurrency or settings.notification_concurrency,
            retry_policy=retry_policy
            or RetryPolicy(
                max_attempts=settings.notification_max_attempts,
                backoff_seconds=settings.notification_backoff_seconds,
            ),
            history_ttl_seconds=settings.queue_history_ttl_seconds,
            history_size=settings.queue_history_max_entries,
        )

    def notify(self, user_id: str, job_id: str | None, status: str, payload: Dict[str, Any] | None = None) -> bool:
        """Enqueue a notification. Never raises; returns whether it was queued."""
        task_id = f"notify_{uuid.uuid4().hex}"
        try:
            message = format_job_message(job_id or "-", status, payload or {})
            return self.queue.add(task_id, {"user_id": user_id, "job_id": job_id, "status": status, "message": message})
        except Exception:
            logger.exception(
                "Failed to enqueue notification",
                extra={"job_id": job_id, "data": {"user_id": user_id, "status": status}},
            )
            return False

    def _deliver(self, payload: Dict[str, Any], *, attempt: int, final_attempt: bool) -> None:
        try:
            self.notifier.send(payload["user_id"], payload["message"])
        except Exception as exc:
            if not final_attempt:
                raise
            logger.error(
                "Notification dropped after final attempt",
                extra={
                    "job_id": payload.get("job_id"),
                    "data": {"user_id": payload["user_id"], "attempts": attempt, "error": str(exc)},
                },
            )
            return
        logger.info(
            "Notification delivered",
            extra={"job_id": payload.get("job_id"), "data": {"user_id": payload["user_id"], "status": payload["status"]}},
        )

    def start(self) -> None:
        self.queue.start()

    def stop(self, timeout: float = 10.0) -> None:
        self.queue.stop(timeout)

    def drain(self) -> int:
        return self.queue.drain()
