"""Evolution API delivery client.

Sends agent replies back to WhatsApp through the Evolution API
`message/sendText/{instance}` endpoint. Inputs are validated before any
network call and transport failures are classified into a single
DeliveryError type.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import socket

import httpx

from nutribot.domain.errors import (
    DeliveryConfigurationError,
    DeliveryError,
    DeliveryFailureKind,
    DeliveryValidationError,
)
from nutribot.domain.events import normalize_channel_id
from nutribot.domain.models import DeliveryReceipt
from nutribot.settings import DeliverySettings

COMPONENT_ID = "clients.evolution.send_text"
CHANNEL_ID_PATTERN = re.compile(r"^\d+$")

logger = logging.getLogger(__name__)


@dataclass
class EvolutionApiClient:
    settings: DeliverySettings
    transport: httpx.AsyncBaseTransport | None = None

    def __post_init__(self) -> None:
        if not self.settings.api_key:
            logger.warning(
                "AUTHENTICATION_API_KEY is not set; reply delivery will fail",
                extra={"operation": COMPONENT_ID},
            )

    @property
    def send_text_url(self) -> str:
        return f"{self.settings.base_url}/message/sendText/{self.settings.instance_name}"

    async def send_text(self, *, channel_id: str, text: str) -> DeliveryReceipt:
        """Send `text` to the WhatsApp number `channel_id`.

        Raises:
            DeliveryValidationError: empty or non-numeric channel id, blank text.
            DeliveryConfigurationError: the API key is not configured.
            DeliveryError: timeout, connection, DNS or non-2xx failure.
        """
        if not channel_id or not channel_id.strip():
            raise DeliveryValidationError("channel id is required", field="channel_id", value=channel_id)

        number = normalize_channel_id(channel_id.strip())
        if not CHANNEL_ID_PATTERN.match(number):
            raise DeliveryValidationError(
                f"invalid channel id format: {number}",
                field="channel_id",
                value=number,
            )

        if not text or not text.strip():
            raise DeliveryValidationError("message text cannot be empty", field="text", value=text)

        if not self.settings.api_key:
            raise DeliveryConfigurationError(
                "AUTHENTICATION_API_KEY is not configured",
                config_key="AUTHENTICATION_API_KEY",
            )

        url = self.send_text_url
        logger.debug(
            "sending reply",
            extra={"operation": COMPONENT_ID, "channel_id": number, "url": url},
        )

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(float(self.settings.timeout_seconds)),
                transport=self.transport,
            ) as client:
                response = await client.post(
                    url,
                    json={"number": number, "text": text.strip()},
                    headers={
                        "Content-Type": "application/json",
                        "apikey": self.settings.api_key,
                    },
                )
        except httpx.TimeoutException as exc:
            raise self._transport_error(
                exc,
                kind=DeliveryFailureKind.TIMEOUT,
                message=f"request timeout after {self.settings.timeout_seconds} seconds to {url}",
                status_code=504,
                number=number,
                url=url,
            ) from exc
        except httpx.TransportError as exc:
            if _is_name_resolution_failure(exc):
                raise self._transport_error(
                    exc,
                    kind=DeliveryFailureKind.DNS,
                    message=f"DNS resolution failed for {url}",
                    status_code=503,
                    number=number,
                    url=url,
                ) from exc
            raise self._transport_error(
                exc,
                kind=DeliveryFailureKind.CONNECTION,
                message=f"connection failed to {url}",
                status_code=503,
                number=number,
                url=url,
            ) from exc

        if response.is_error:
            logger.error(
                "Evolution API request failed",
                extra={
                    "operation": COMPONENT_ID,
                    "channel_id": number,
                    "url": url,
                    "status_code": response.status_code,
                    "response_body": response.text,
                },
            )
            raise DeliveryError(
                f"Evolution API request failed: {response.status_code} {response.reason_phrase}",
                kind=DeliveryFailureKind.HTTP_STATUS,
                channel_id=number,
                url=url,
                status_code=response.status_code,
                response_body=response.text,
            )

        receipt = DeliveryReceipt(
            channel_id=number,
            url=url,
            status_code=response.status_code,
            response_json=_json_or_none(response),
        )
        logger.info(
            "reply sent",
            extra={"operation": COMPONENT_ID, "channel_id": number, "status_code": response.status_code},
        )
        return receipt

    def _transport_error(
        self,
        exc: Exception,
        *,
        kind: DeliveryFailureKind,
        message: str,
        status_code: int,
        number: str,
        url: str,
    ) -> DeliveryError:
        logger.error(
            "failed to send reply via Evolution API",
            extra={
                "operation": COMPONENT_ID,
                "failure_kind": str(kind),
                "channel_id": number,
                "url": url,
                "error": str(exc) or type(exc).__name__,
            },
        )
        return DeliveryError(message, kind=kind, channel_id=number, url=url, status_code=status_code)


def _is_name_resolution_failure(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return True
        text = str(current)
        if "getaddrinfo" in text or "Name or service not known" in text or "nodename nor servname" in text:
            return True
        current = current.__cause__ or current.__context__
    return False


def _json_or_none(response: httpx.Response) -> object | None:
    try:
        return response.json()
    except ValueError:
        return None
