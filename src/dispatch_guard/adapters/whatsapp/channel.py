"""Canal WhatsApp Cloud API (adapter fino de envio de texto).

Responsabilidades:
- POST de mensagem de texto em /{phone_number_id}/messages
- Converter falhas de transporte, status não-2xx e erros Meta em ChannelSendError
- 2xx sem message id vira recibo `unknown:<hex>` com warning
- Logging estruturado sem PII (token, número e corpo nunca são logados)
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from dispatch_guard.domain.errors import ChannelSendError
from dispatch_guard.domain.protocols.channel import MessageChannel
from dispatch_guard.domain.results import ChannelReceipt
from dispatch_guard.observability.logging import get_logger

if TYPE_CHECKING:
    from dispatch_guard.config.settings import Settings

logger: logging.Logger = get_logger(__name__)

UNKNOWN_MESSAGE_ID_PREFIX = "unknown:"


@dataclass(frozen=True)
class MetaApiError:
    """Erro retornado pela API Meta/WhatsApp."""

    error_type: str
    error_code: int
    error_message: str


def _parse_meta_error(response_data: dict[str, Any]) -> MetaApiError | None:
    error_obj = response_data.get("error")
    if not error_obj or not isinstance(error_obj, dict):
        return None
    return MetaApiError(
        error_type=str(error_obj.get("type", "unknown")),
        error_code=int(error_obj.get("code", 0) or 0),
        error_message=str(error_obj.get("message", "Erro desconhecido")),
    )


def build_text_payload(destination_id: str, content: str) -> dict[str, Any]:
    """Payload de mensagem de texto conforme Cloud API."""
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": destination_id,
        "type": "text",
        "text": {"preview_url": False, "body": content},
    }


class WhatsAppCloudChannel(MessageChannel):
    """Envio de texto pela Graph API.

    O cliente httpx pode ser injetado (testes usam httpx.MockTransport).
    """

    name = "whatsapp"

    def __init__(
        self,
        endpoint: str,
        access_token: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._endpoint = endpoint
        self._access_token = access_token
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ) -> WhatsAppCloudChannel:
        errors = settings.validate_whatsapp_config()
        if errors:
            raise ValueError("; ".join(errors))
        return cls(
            endpoint=settings.get_messages_endpoint(),
            access_token=settings.whatsapp_access_token or "",
            client=client,
            timeout_seconds=settings.whatsapp_request_timeout_seconds,
        )

    async def send_raw(self, destination_id: str, content: str) -> ChannelReceipt:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.post(
                self._endpoint,
                json=build_text_payload(destination_id, content),
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error("whatsapp_transport_error", extra={"error": type(e).__name__})
            raise ChannelSendError(f"Transport error: {type(e).__name__}") from e

        return self._process_response(response)

    def _process_response(self, response: httpx.Response) -> ChannelReceipt:
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            data = {}
        if not isinstance(data, dict):
            data = {}

        meta_error = _parse_meta_error(data)
        if meta_error is not None:
            logger.warning(
                "Erro da API Meta/WhatsApp",
                extra={
                    "status_code": response.status_code,
                    "error_type": meta_error.error_type,
                    "error_code": meta_error.error_code,
                },
            )
            raise ChannelSendError(
                f"Meta error {meta_error.error_code}: {meta_error.error_message}",
                status_code=response.status_code,
                error_code=meta_error.error_code,
            )

        if not response.is_success:
            logger.warning("whatsapp_http_error", extra={"status_code": response.status_code})
            raise ChannelSendError(
                f"HTTP {response.status_code}", status_code=response.status_code
            )

        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not message_id:
            # 2xx sem id conta como aceito.
            message_id = UNKNOWN_MESSAGE_ID_PREFIX + uuid.uuid4().hex
            logger.warning(
                "whatsapp_response_missing_message_id",
                extra={"status_code": response.status_code, "message_id": message_id},
            )
            return ChannelReceipt(message_id=message_id)

        logger.debug("whatsapp_message_accepted", extra={"status_code": response.status_code})
        return ChannelReceipt(message_id=str(message_id))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
