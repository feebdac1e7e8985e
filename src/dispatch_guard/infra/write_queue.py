"""Fila de escrita assíncrona com coalescência e retry limitado.

Responsabilidades:
- Manter somente o produtor mais recente por documento (coalescência)
- Gravar em worker thread (anyio.to_thread) com backoff linear
- Registrar falhas esgotadas em ERROR e contabilizá-las (nunca silenciar)

Exposição máxima em caso de crash: alterações desde o último drain bem
sucedido (um intervalo de sync mais o orçamento de retries).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import anyio.to_thread

from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.observability.logging import get_logger

logger: logging.Logger = get_logger(__name__)

DocumentProducer = Callable[[], dict[str, Any]]


class WriteQueue:
    """Fila coalescente de documentos a persistir.

    O produtor é chamado no momento do drain, no loop de eventos, de modo que
    o snapshot gravado reflete o estado mais recente em memória.
    """

    def __init__(
        self,
        backend: StateBackend,
        max_retries: int = 3,
        retry_delay_seconds: float = 0.5,
    ) -> None:
        self._backend = backend
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._pending: dict[str, DocumentProducer] = {}
        self._drain_task: asyncio.Task[None] | None = None

        self.failed_writes: int = 0
        self.completed_writes: int = 0
        self.last_error: str | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def submit(self, name: str, producer: DocumentProducer) -> None:
        """Agenda gravação do documento (substitui pedido anterior pendente)."""
        self._pending[name] = producer
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain(), name="write-queue-drain")

    async def flush(self) -> None:
        """Aguarda até que todos os documentos pendentes tenham sido processados."""
        while self._pending or (self._drain_task is not None and not self._drain_task.done()):
            if self._drain_task is None or self._drain_task.done():
                self._drain_task = asyncio.create_task(self._drain(), name="write-queue-drain")
            await asyncio.shield(self._drain_task)

    async def _drain(self) -> None:
        while self._pending:
            name = next(iter(self._pending))
            producer = self._pending.pop(name)
            try:
                document = producer()
            except Exception as e:
                self._register_failure(name, e, attempts=0)
                continue
            await self._save_with_retry(name, document)

    async def _save_with_retry(self, name: str, document: dict[str, Any]) -> None:
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await anyio.to_thread.run_sync(self._backend.save, name, document)
                self.completed_writes += 1
                return
            except Exception as e:
                if attempt >= attempts:
                    self._register_failure(name, e, attempts=attempt)
                    return
                logger.warning(
                    "state_write_retry",
                    extra={"doc": name, "attempt": attempt, "error": type(e).__name__},
                )
                await asyncio.sleep(self._retry_delay * attempt)

    def _register_failure(self, name: str, error: Exception, attempts: int) -> None:
        self.failed_writes += 1
        self.last_error = f"{name}: {error}"
        logger.error(
            "state_write_failed",
            extra={"doc": name, "attempts": attempts, "error": str(error)},
        )
