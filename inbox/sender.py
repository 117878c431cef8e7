"""
Outbound WhatsApp Cloud API client used for operator replies.
"""

import json
import logging
from typing import Any, Optional, Protocol

import httpx

from inbox.config import Settings
from inbox.errors import UpstreamSendFailure

logger = logging.getLogger(__name__)


class OutboundSender(Protocol):
    async def send_text(
        self, to: str, text: str, reply_to_message_id: Optional[str] = None
    ) -> dict[str, Any]:
        ...


class WhatsAppSender:
    """
    Sends text messages through the Graph API ``/{phone_number_id}/messages``
    endpoint with a bearer token. Every failure surfaces as
    ``UpstreamSendFailure`` carrying the provider's error detail when present.
    """

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v20.0",
        api_base: str = "https://graph.facebook.com",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = (access_token or "").strip()
        self.phone_number_id = (phone_number_id or "").strip()
        self.base_url = f"{api_base.rstrip('/')}/{api_version}/{self.phone_number_id}"
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhatsAppSender":
        return cls(
            access_token=settings.WHATSAPP_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            api_version=settings.WHATSAPP_API_VERSION,
            api_base=settings.WHATSAPP_API_BASE,
            timeout=settings.SEND_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    async def send_text(
        self, to: str, text: str, reply_to_message_id: Optional[str] = None
    ) -> dict[str, Any]:
        if not self.configured:
            raise UpstreamSendFailure(
                "WhatsApp sending is not configured: set WHATSAPP_TOKEN and WHATSAPP_PHONE_NUMBER_ID"
            )

        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        if reply_to_message_id:
            payload["context"] = {"message_id": reply_to_message_id}

        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        logger.info(f"Sending WhatsApp text to {to}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/messages", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp API request failed: {e!r}")
            raise UpstreamSendFailure(f"WhatsApp API request failed: {e!r}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"response": data}

        if response.is_error:
            error = data.get("error") if isinstance(data.get("error"), dict) else None
            message = (error or {}).get("message") or f"WhatsApp API error ({response.status_code})"
            details = json.dumps(error if error is not None else data)
            logger.error(f"WhatsApp API rejected send to {to}: {message}")
            raise UpstreamSendFailure(f"{message}: {details}", details=error or data)

        logger.debug(f"WhatsApp API response: {data}")
        return data
