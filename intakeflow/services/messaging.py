"""
Messaging send adapter - delivers replies through the platform's Graph-style send API.

Error mapping:
    network error, timeout, HTTP 429, HTTP 5xx  -> TransientError (retried)
    any other HTTP 4xx, missing access token    -> MessagingRejectedError (dead-lettered)
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from intakeflow.utils.errors import MessagingRejectedError, TransientError

logger = logging.getLogger(__name__)

# Instagram DM text limit
MAX_MESSAGE_CHARS = 1000


def enforce_message_length(text: str) -> str:
    """Trim a reply to the platform limit on a word boundary."""
    text = (text or "").strip()
    if len(text) <= MAX_MESSAGE_CHARS:
        return text
    cut = text[: MAX_MESSAGE_CHARS - 3]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut + "..."


def mask_id(value: str) -> str:
    """Mask an external id for logging - show the first 6 characters only."""
    if value and len(value) > 6:
        return value[:6] + "***"
    return value


class MessagingAdapter(ABC):
    """Abstract outbound messaging channel."""

    @abstractmethod
    async def send(
        self,
        platform_account_id: str,
        recipient_external_id: str,
        text: str,
        correlation_id: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> dict:
        """
        Send a text message.
        Returns: {"message_id": str|None}
        """
        ...


class GraphMessagingAdapter(MessagingAdapter):
    """POST {base_url}/{account_id}/messages with a page access token."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        from intakeflow.config import get_settings
        settings = get_settings()
        self.base_url = (base_url or settings.messaging_api_base_url).rstrip("/")
        self.timeout = timeout or settings.messaging_timeout_seconds
        self._transport = transport

    async def send(
        self,
        platform_account_id: str,
        recipient_external_id: str,
        text: str,
        correlation_id: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> dict:
        if not access_token:
            raise MessagingRejectedError(f"No access token for account {platform_account_id}")

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/{platform_account_id}/messages",
                    headers=headers,
                    json={
                        "recipient": {"id": recipient_external_id},
                        "message": {"text": enforce_message_length(text)},
                    },
                )
        except httpx.TimeoutException as e:
            raise TransientError("Send API timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"Send API unreachable: {e.__class__.__name__}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientError(f"Send API returned HTTP {status}")
        if status >= 400:
            raise MessagingRejectedError(f"Send API rejected message: HTTP {status} {_error_code(response)}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        message_id = data.get("message_id") if isinstance(data, dict) else None

        logger.info(
            "Message sent to %s via %s",
            mask_id(recipient_external_id), mask_id(platform_account_id),
        )
        return {"message_id": message_id}


def _error_code(response: httpx.Response) -> str:
    """Graph error code (no message text, which may echo user content)."""
    try:
        error = response.json().get("error", {})
        return f"code={error.get('code')} subcode={error.get('error_subcode')}"
    except (ValueError, AttributeError):
        return ""


async def send_message(
    adapter: MessagingAdapter,
    platform_account_id: str,
    recipient_external_id: str,
    text: str,
    correlation_id: Optional[str] = None,
    access_token: Optional[str] = None,
) -> dict:
    """Send under the messaging deadline; a timeout is a TransientError."""
    from intakeflow.config import get_settings
    settings = get_settings()

    try:
        return await asyncio.wait_for(
            adapter.send(platform_account_id, recipient_external_id, text, correlation_id, access_token),
            timeout=settings.messaging_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise TransientError("Message send timed out") from e
