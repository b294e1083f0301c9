"""Outbound SMS transport.

The gateway depends only on the ``SmsTransport`` protocol. ``TelnyxTransport``
talks to the Telnyx v2 REST API with raw httpx (no Telnyx SDK).
``DryRunTransport`` logs instead of sending and is wired when no Telnyx
credentials are configured (local development).
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from .models import new_id

logger = logging.getLogger(__name__)

# GSM 03.38 Basic Character Set (single-shift table).
# Extended chars ({, }, [, ], \, |, ^, ~, euro sign) each consume 2 septets.
_GSM7_BASIC: frozenset[str] = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅå"
    "Δ_ΦΓΛΩΠΨΣΘΞ"
    "\x1bÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§"
    "¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

_GSM7_EXTENSION: frozenset[str] = frozenset("{}[]\\|^~€")

TELNYX_API_BASE = "https://api.telnyx.com/v2"


class TransportError(Exception):
    """The transport could not hand the message to the carrier."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@runtime_checkable
class SmsTransport(Protocol):
    async def send_raw_message(
        self,
        to: str,
        from_: str,
        body: str,
        media_urls: list[str] | None = None,
    ) -> str:
        """Send one message and return the provider message ID."""
        ...


def detect_encoding(text: str) -> tuple[str, int]:
    """Detect whether *text* fits GSM-7 or requires UCS-2 encoding.

    Returns:
        ``("gsm7", 160)`` for plain GSM text, ``("ucs2", 70)`` otherwise.
    """
    for char in text:
        if char not in _GSM7_BASIC and char not in _GSM7_EXTENSION:
            return ("ucs2", 70)
    return ("gsm7", 160)


def segment_count(text: str) -> int:
    """Number of SMS segments the carrier will bill for *text*.

    Multi-part messages lose room to the User Data Header: 153 chars per
    segment for GSM-7, 67 for UCS-2.
    """
    if not text:
        return 0
    encoding, single = detect_encoding(text)
    if len(text) <= single:
        return 1
    per_part = 153 if encoding == "gsm7" else 67
    return -(-len(text) // per_part)


class TelnyxTransport:
    """Async SMS transport for the Telnyx v2 REST API.

    Args:
        api_key: Telnyx API v2 key.
        messaging_profile_id: Telnyx messaging profile UUID.
        base_url: Override for testing; defaults to Telnyx v2 production API.
        http_client: Pre-built client (tests inject one with a mock transport).
    """

    def __init__(
        self,
        api_key: str,
        messaging_profile_id: str,
        *,
        base_url: str = TELNYX_API_BASE,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._messaging_profile_id = messaging_profile_id
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(10.0),
        )
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the underlying HTTP client if we own it."""
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def send_raw_message(
        self,
        to: str,
        from_: str,
        body: str,
        media_urls: list[str] | None = None,
    ) -> str:
        """Send a message via Telnyx ``POST /messages``.

        Args:
            to: Destination phone number in E.164 format.
            from_: Sender phone number in E.164 format.
            body: Message text.
            media_urls: Optional MMS media URLs.

        Returns:
            Telnyx message ID.

        Raises:
            TransportError: On network errors, non-2xx responses, or a
                response without a message ID.
        """
        payload: dict[str, Any] = {
            "from": from_,
            "to": to,
            "text": body,
            "messaging_profile_id": self._messaging_profile_id,
        }
        if media_urls:
            payload["media_urls"] = media_urls

        encoding, _ = detect_encoding(body)
        logger.info(
            "Sending SMS to=%s encoding=%s segments=%d",
            to[-4:],
            encoding,
            segment_count(body),
        )

        try:
            response = await self._client.post("/messages", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"Telnyx rejected message: HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Telnyx request failed: {exc}") from exc

        body_json = response.json()
        data: dict[str, Any] = body_json.get("data", body_json)
        message_id = data.get("id")
        if not message_id:
            raise TransportError("Telnyx response did not include a message id")
        logger.info("SMS sent message_id=%s", message_id)
        return str(message_id)


class DryRunTransport:
    """Logs messages instead of sending them."""

    async def send_raw_message(
        self,
        to: str,
        from_: str,
        body: str,
        media_urls: list[str] | None = None,
    ) -> str:
        message_id = f"dryrun-{new_id()}"
        logger.warning("Dry-run transport: SMS to=%s not sent (message_id=%s)", to[-4:], message_id)
        return message_id
