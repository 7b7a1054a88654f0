"""Unit tests for ManyChatClient using httpx.MockTransport."""

import json

import httpx
import pytest

from booking.exceptions import ExternalServiceError
from shared.manychat_client import ManyChatClient, is_retryable_http_error


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.manychat.com/fb/sending/sendContent")
    return httpx.HTTPStatusError("error", request=request, response=httpx.Response(code, request=request))


class TestRetryPolicy:
    def test_server_errors_are_retried(self):
        assert is_retryable_http_error(_status_error(503))

    def test_client_errors_are_not_retried(self):
        assert not is_retryable_http_error(_status_error(400))

    def test_transport_errors_are_retried(self):
        assert is_retryable_http_error(httpx.ConnectError("refused"))

    def test_other_errors_are_not_retried(self):
        assert not is_retryable_http_error(ValueError("x"))


class TestSendText:
    @pytest.mark.asyncio
    async def test_send_text_payload(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "success"})

        client = ManyChatClient("mc-key", transport=httpx.MockTransport(handler))

        result = await client.send_text("sub-123", "Olá!")

        assert result == {"status": "success"}
        assert captured["url"].endswith("/sending/sendContent")
        assert captured["auth"] == "Bearer mc-key"
        assert captured["body"]["subscriber_id"] == "sub-123"
        assert captured["body"]["message_tag"] == "ACCOUNT_UPDATE"
        assert captured["body"]["data"]["content"]["messages"] == [{"type": "text", "text": "Olá!"}]

    @pytest.mark.asyncio
    async def test_rejected_message_raises_external_service_error(self):
        client = ManyChatClient(
            "bad-key",
            transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"status": "error"})),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.send_text("sub-123", "Olá!")

        assert exc_info.value.service == "manychat"
