"""Push and email notifications for pipeline milestones.

Delivery is best effort: failures are logged and reported as ``False``,
never raised, so a notification outage cannot fail a pipeline stage.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)

EmailSender = Callable[[str, str, str], Awaitable[None]]


async def log_email_sender(user_id: str, subject: str, body: str) -> None:
    """Default sender: record the email instead of delivering it."""
    logger.info("notifications.email_logged", user_id=user_id, subject=subject, body_length=len(body))


class NotificationService:
    """Sends Expo push notifications and hands emails to a pluggable sender.

    Args:
        push_url: Expo push endpoint.
        push_tokens: Registered device tokens per user id.
        email_sender: Coroutine ``(user_id, subject, body)``.
        email_from: Sender address stamped on outgoing email.
    """

    TIMEOUT = 10.0

    def __init__(
        self,
        push_url: str,
        push_tokens: dict[str, list[str]] | None = None,
        email_sender: EmailSender | None = None,
        email_from: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._push_url = push_url
        self._push_tokens = push_tokens or {}
        self._email_sender = email_sender or log_email_sender
        self._email_from = email_from
        self._transport = transport

    def register_push_token(self, user_id: str, token: str) -> None:
        tokens = self._push_tokens.setdefault(user_id, [])
        if token not in tokens:
            tokens.append(token)

    async def send_push(
        self,
        user_id: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Push to every device registered for the user.

        Returns:
            True if the push service accepted the batch, False when the user
            has no devices or delivery failed.
        """
        tokens = self._push_tokens.get(user_id, [])
        if not tokens:
            logger.debug("notifications.push_skipped", user_id=user_id, reason="no_tokens")
            return False

        messages = [
            {"to": token, "title": title, "body": body, "data": data or {}, "sound": "default"}
            for token in tokens
        ]
        try:
            async with httpx.AsyncClient(timeout=self.TIMEOUT, transport=self._transport) as client:
                response = await client.post(self._push_url, json=messages)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("notifications.push_failed", user_id=user_id, title=title, error=str(exc))
            return False

        logger.info("notifications.push_sent", user_id=user_id, title=title, devices=len(tokens))
        return True

    async def send_email(self, user_id: str, subject: str, body: str) -> bool:
        try:
            await self._email_sender(user_id, subject, body)
        except Exception as exc:
            logger.warning("notifications.email_failed", user_id=user_id, subject=subject, error=str(exc))
            return False
        logger.info("notifications.email_sent", user_id=user_id, subject=subject, sender=self._email_from)
        return True
