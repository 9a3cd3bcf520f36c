"""
Client for the outbound messaging gateway (SMS / email).

The gateway is an opaque transport: one POST per message, bounded by
MESSAGING_SEND_TIMEOUT_SECONDS. Transport errors, timeouts and non-2xx answers
all come back as a failed SendResult; nothing here raises for a failed send.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from app import config

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False


class MessagingGatewayClient:
    """
    Synchronous gateway client.

    ``transport`` is passed through to httpx (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else config.MESSAGING_GATEWAY_URL) or ""
        self.api_key = api_key if api_key is not None else config.MESSAGING_GATEWAY_API_KEY
        self.timeout = timeout if timeout is not None else config.MESSAGING_SEND_TIMEOUT_SECONDS
        self.transport = transport

    def send_message(self, account, destination: str, body: str, channel: str = "sms") -> SendResult:
        if not self.base_url:
            return SendResult(success=False, error="messaging gateway not configured")

        payload = {
            "channel": channel,
            "accountRef": account.credentials_ref,
            "from": account.from_address,
            "to": destination,
            "body": body,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        url = f"{self.base_url.rstrip('/')}/messages"

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning(
                "messaging gateway timeout",
                extra={"level": account.level, "channel": channel, "timeout": self.timeout},
            )
            return SendResult(success=False, error=f"send timed out after {self.timeout}s", timed_out=True)
        except httpx.HTTPError as e:
            logger.warning(
                "messaging gateway transport error",
                extra={"level": account.level, "channel": channel, "error": str(e)},
            )
            return SendResult(success=False, error=f"gateway transport error: {e}")

        if response.status_code >= 400:
            return SendResult(
                success=False,
                error=f"gateway returned {response.status_code}: {response.text[:500]}",
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        if isinstance(data, dict) and data.get("success") is False:
            return SendResult(success=False, error=str(data.get("error") or "gateway rejected message"))

        message_id = None
        if isinstance(data, dict):
            message_id = data.get("providerMessageId") or data.get("messageId") or data.get("id")

        return SendResult(success=True, provider_message_id=str(message_id) if message_id else None)


def send_message(account, destination: str, body: str, channel: str = "sms") -> SendResult:
    return MessagingGatewayClient().send_message(account, destination, body, channel=channel)
