"""Contrato do canal de mensagens (adapter fino sobre o provedor)."""

from __future__ import annotations

from abc import ABC, abstractmethod

from dispatch_guard.domain.results import ChannelReceipt


class MessageChannel(ABC):
    """Canal de saída. Sessão, protocolo e retries ficam no adapter."""

    name: str = "channel"

    @abstractmethod
    async def send_raw(self, destination_id: str, content: str) -> ChannelReceipt:
        """Envia texto ao destino.

        Raises:
            ChannelSendError: em qualquer falha de entrega reportada
        """
