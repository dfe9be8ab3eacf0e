"""Tests for NotificationService.

Push requests go through httpx.MockTransport; email goes through a
recording sender. Delivery failures return False instead of raising.
"""

from __future__ import annotations

import json

import httpx

from src.scriber.services.notifications import NotificationService

PUSH_URL = "https://exp.host/--/api/v2/push/send"


def _service(handler, tokens=None, sender=None) -> NotificationService:
    return NotificationService(
        PUSH_URL,
        push_tokens=tokens,
        email_sender=sender,
        email_from="noreply@scriber.test",
        transport=httpx.MockTransport(handler),
    )


class TestPush:
    async def test_sends_one_message_per_device(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": []})

        service = _service(handler, tokens={"u1": ["tok-a"]})
        service.register_push_token("u1", "tok-b")
        service.register_push_token("u1", "tok-a")

        ok = await service.send_push("u1", "Transcript ready", "Weekly sync", {"meeting_id": "m1"})

        assert ok is True
        body = json.loads(seen[0].content)
        assert [m["to"] for m in body] == ["tok-a", "tok-b"]
        assert body[0]["data"] == {"meeting_id": "m1"}

    async def test_no_devices_skips_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert await _service(handler).send_push("u1", "t", "b") is False

    async def test_server_error_returns_false(self):
        service = _service(lambda request: httpx.Response(503), tokens={"u1": ["tok"]})
        assert await service.send_push("u1", "t", "b") is False

    async def test_connection_error_returns_false(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = _service(handler, tokens={"u1": ["tok"]})
        assert await service.send_push("u1", "t", "b") is False


class TestEmail:
    async def test_sender_receives_message(self):
        sent = []

        async def sender(user_id, subject, body):
            sent.append((user_id, subject, body))

        service = _service(lambda r: httpx.Response(200), sender=sender)

        assert await service.send_email("u1", "Minutes ready", "# Minutes") is True
        assert sent == [("u1", "Minutes ready", "# Minutes")]

    async def test_sender_failure_returns_false(self):
        async def sender(user_id, subject, body):
            raise RuntimeError("smtp down")

        service = _service(lambda r: httpx.Response(200), sender=sender)
        assert await service.send_email("u1", "s", "b") is False

    async def test_default_sender_logs(self):
        service = NotificationService(PUSH_URL)
        assert await service.send_email("u1", "s", "b") is True
