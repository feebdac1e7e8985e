"""Índices do gate de deduplicação (store em memória com sync durável).

Responsabilidades:
- Manter sent-set, índice de conteúdo, histórico por cliente e estatísticas
- Carregar os documentos do backend no start e gravá-los via WriteQueue
- Podar entradas antigas (7x janela para envios, 2x para conteúdo/histórico)

Ciclo de vida: construir -> await start() -> servir -> await shutdown().
Uma instância por processo, injetada no gate.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import anyio.to_thread
from pydantic import ValidationError

from dispatch_guard.domain.errors import InternalGateError, StateBackendError
from dispatch_guard.domain.models import (
    ContentIndexEntry,
    DedupeStatistics,
    HistoryEntry,
    SentRecord,
)
from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.infra.periodic import PeriodicTask
from dispatch_guard.infra.write_queue import WriteQueue
from dispatch_guard.observability.logging import get_logger, log_fallback

logger: logging.Logger = get_logger(__name__)

DOC_SENT_MESSAGES = "sent-messages"
DOC_CUSTOMER_HISTORY = "customer-history"
DOC_MESSAGE_HASHES = "message-hashes"
DOC_STATISTICS = "statistics"

SENT_RETENTION_FACTOR = 7
INDEX_RETENTION_FACTOR = 2
PREVIEW_LENGTH = 50


class DedupeIndex:
    """Estado do gate de deduplicação."""

    def __init__(
        self,
        backend: StateBackend,
        write_queue: WriteQueue,
        window_seconds: float = 86400.0,
        cleanup_interval_seconds: float = 3600.0,
        sync_interval_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._backend = backend
        self._writes = write_queue
        self.window_seconds = window_seconds
        self._clock = clock or time.time

        self.sent: dict[str, SentRecord] = {}
        self.content: dict[str, ContentIndexEntry] = {}
        self.history: dict[str, list[HistoryEntry]] = {}
        self.statistics = DedupeStatistics()
        self._loaded = False

        self._maintenance = [
            PeriodicTask("dedupe-cleanup", cleanup_interval_seconds, self.run_cleanup),
            PeriodicTask("dedupe-sync", sync_interval_seconds, self.run_snapshot),
        ]

    @property
    def loaded(self) -> bool:
        return self._loaded

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Carrega documentos e inicia limpeza/snapshot periódicos."""
        await self.load()
        for task in self._maintenance:
            task.start()

    async def load(self) -> None:
        """Carrega documentos do backend. Documento ilegível = estado vazio."""
        sent = await self._load_doc(DOC_SENT_MESSAGES)
        history = await self._load_doc(DOC_CUSTOMER_HISTORY)
        hashes = await self._load_doc(DOC_MESSAGE_HASHES)
        stats = await self._load_doc(DOC_STATISTICS)

        try:
            self.sent = {k: SentRecord.model_validate(v) for k, v in sent.items()}
            self.history = {
                c: sorted(
                    (HistoryEntry.model_validate(e) for e in entries),
                    key=lambda e: e.sent_at,
                )
                for c, entries in history.items()
            }
            self.content = {k: ContentIndexEntry.model_validate(v) for k, v in hashes.items()}
            self.statistics = DedupeStatistics.model_validate(stats)
        except (ValidationError, AttributeError, TypeError) as e:
            log_fallback(logger, "dedupe_index", reason=f"invalid_document:{type(e).__name__}")
            self._reset_memory()

        self._loaded = True
        logger.info(
            "dedupe_index_loaded",
            extra={
                "sent_records": len(self.sent),
                "customers": len(self.history),
                "fingerprints": len(self.content),
            },
        )

    async def shutdown(self) -> None:
        """Cancela manutenção e persiste o estado final."""
        for task in self._maintenance:
            await task.stop()
        if self._loaded:
            self.schedule_snapshot()
            await self._writes.flush()

    async def _load_doc(self, name: str) -> dict[str, Any]:
        try:
            doc = await anyio.to_thread.run_sync(self._backend.load, name)
        except StateBackendError as e:
            log_fallback(logger, "dedupe_index", reason=f"load_error:{name}")
            logger.error("dedupe_document_unreadable", extra={"doc": name, "error": str(e)})
            return {}
        return doc if isinstance(doc, dict) else {}

    def ensure_loaded(self) -> None:
        if not self._loaded:
            raise InternalGateError("DedupeIndex used before load()")

    # ------------------------------------------------------------------
    # Leitura
    # ------------------------------------------------------------------

    def history_in_window(self, customer_id: str, now: float | None = None) -> list[HistoryEntry]:
        """Histórico do cliente filtrado pela janela (mais antigo primeiro)."""
        current = self.now() if now is None else now
        return [
            e
            for e in self.history.get(customer_id, [])
            if current - e.sent_at < self.window_seconds
        ]

    def fingerprint_sent_at(self, fingerprint: str, customer_id: str) -> float | None:
        entry = self.content.get(fingerprint)
        if entry is None:
            return None
        return entry.customer_timestamps.get(customer_id)

    # ------------------------------------------------------------------
    # Escrita
    # ------------------------------------------------------------------

    def add(self, record: SentRecord, content: str) -> None:
        """Registra envio confirmado nos três índices."""
        self.ensure_loaded()
        self.sent[record.dispatch_key] = record

        entry = self.content.setdefault(
            record.content_fingerprint,
            ContentIndexEntry(preview=content[:PREVIEW_LENGTH]),
        )
        if record.customer_id not in entry.customers:
            entry.customers.append(record.customer_id)
        entry.customer_timestamps[record.customer_id] = record.sent_at

        self.history.setdefault(record.customer_id, []).append(
            HistoryEntry(
                order_id=record.order_id,
                message_type=record.message_type,
                channel_segment=record.channel_segment,
                content_fingerprint=record.content_fingerprint,
                sent_at=record.sent_at,
            )
        )
        self.statistics.total_messages_sent += 1
        self.schedule_snapshot()

    def clear(self) -> None:
        """Apaga todos os índices e estatísticas (operacional)."""
        self._reset_memory()
        self.schedule_snapshot()
        logger.warning("dedupe_index_cleared")

    def _reset_memory(self) -> None:
        self.sent = {}
        self.content = {}
        self.history = {}
        self.statistics = DedupeStatistics()

    # ------------------------------------------------------------------
    # Manutenção
    # ------------------------------------------------------------------

    def cleanup(self, now: float | None = None) -> dict[str, int]:
        """Poda entradas antigas e retorna quantas foram removidas por índice."""
        current = self.now() if now is None else now
        sent_cutoff = current - SENT_RETENTION_FACTOR * self.window_seconds
        index_cutoff = current - INDEX_RETENTION_FACTOR * self.window_seconds

        stale_keys = [k for k, r in self.sent.items() if r.sent_at < sent_cutoff]
        for key in stale_keys:
            del self.sent[key]

        removed_fingerprints = 0
        for fingerprint in list(self.content):
            entry = self.content[fingerprint]
            entry.customer_timestamps = {
                c: ts for c, ts in entry.customer_timestamps.items() if ts >= index_cutoff
            }
            entry.customers = [c for c in entry.customers if c in entry.customer_timestamps]
            if not entry.customers:
                del self.content[fingerprint]
                removed_fingerprints += 1

        removed_customers = 0
        for customer in list(self.history):
            kept = [e for e in self.history[customer] if current - e.sent_at < self.window_seconds]
            if kept:
                self.history[customer] = kept
            else:
                del self.history[customer]
                removed_customers += 1

        self.statistics.last_cleanup = current
        self.schedule_snapshot()
        removed = {
            "sent_records": len(stale_keys),
            "fingerprints": removed_fingerprints,
            "customers": removed_customers,
        }
        logger.info("dedupe_cleanup_completed", extra=removed)
        return removed

    async def run_cleanup(self) -> None:
        self.cleanup()

    async def run_snapshot(self) -> None:
        self.schedule_snapshot()

    def schedule_snapshot(self) -> None:
        """Agenda gravação dos quatro documentos (coalescida pela WriteQueue)."""
        self._writes.submit(
            DOC_SENT_MESSAGES,
            lambda: {k: r.model_dump(mode="json") for k, r in self.sent.items()},
        )
        self._writes.submit(
            DOC_CUSTOMER_HISTORY,
            lambda: {
                c: [e.model_dump(mode="json") for e in entries]
                for c, entries in self.history.items()
            },
        )
        self._writes.submit(
            DOC_MESSAGE_HASHES,
            lambda: {k: e.model_dump(mode="json") for k, e in self.content.items()},
        )
        self._writes.submit(DOC_STATISTICS, lambda: self.statistics.model_dump(mode="json"))
