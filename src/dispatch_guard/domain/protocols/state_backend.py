"""Contrato do backend de estado durável.

Interface síncrona (I/O bloqueante); a camada de aplicação a executa em
worker threads via anyio.to_thread.run_sync.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class StateBackend(ABC):
    """Armazena documentos JSON nomeados (ex.: "sent-messages", "lock-<id>").

    Implementações devem:
    - Tratar documento ausente como None em load()
    - Substituir o documento inteiro em save() (sem escrita parcial visível)
    - Garantir create_exclusive() atômico (falha se o nome já existir)

    Falhas de I/O são reportadas como StateBackendError.
    """

    @abstractmethod
    def load(self, name: str) -> dict[str, Any] | None:
        """Carrega documento ou None se inexistente."""

    @abstractmethod
    def save(self, name: str, document: dict[str, Any]) -> None:
        """Grava (substitui) documento."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Remove documento. Retorna False se não existia."""

    @abstractmethod
    def create_exclusive(self, name: str, document: dict[str, Any]) -> bool:
        """Cria documento somente se não existir.

        Returns:
            True se criado; False se já existia outro documento com o nome.
        """

    @abstractmethod
    def list_names(self, prefix: str = "") -> list[str]:
        """Lista nomes de documentos com o prefixo dado."""
