"""
ManyChat client for sending chat messages to subscribers.

Each tenant has its own ManyChat API key (tenant.config["manyChatApiKey"]),
so a client is built per tenant and call.
"""

import logging
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from booking.exceptions import ExternalServiceError
from shared.config import get_settings

logger = logging.getLogger(__name__)

# Message tag allowed outside the 24h window for transactional updates
MESSAGE_TAG = "ACCOUNT_UPDATE"


def is_retryable_http_error(exc: BaseException) -> bool:
    """Transport failures and 5xx responses are retried; 4xx are not."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class ManyChatClient:
    """
    Client for the ManyChat sending API.

    Args:
        api_key: Tenant's ManyChat API key
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(self, api_key: str, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        # Remove trailing slash to avoid double slashes in URLs
        self.api_url = settings.MANYCHAT_API_URL.rstrip("/")
        self.timeout = settings.EXTERNAL_API_TIMEOUT_SECONDS
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(is_retryable_http_error),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.post(
                f"{self.api_url}{path}",
                json=payload,
                headers=self.headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json() if response.content else {}

    async def send_text(self, subscriber_id: str, text: str) -> dict[str, Any]:
        """
        Send a plain text message to a subscriber.

        Raises:
            ExternalServiceError: ManyChat rejected the message or was unreachable
        """
        payload = {
            "subscriber_id": subscriber_id,
            "data": {
                "version": "v2",
                "content": {
                    "messages": [{"type": "text", "text": text}],
                },
            },
            "message_tag": MESSAGE_TAG,
        }

        try:
            result = await self._post("/sending/sendContent", payload)
        except httpx.HTTPError as e:
            logger.error(f"ManyChat send failed for subscriber {subscriber_id}: {e}")
            raise ExternalServiceError(
                f"ManyChat send failed: {e}", service="manychat"
            ) from e

        logger.info(f"ManyChat message sent to subscriber {subscriber_id}")
        return result
