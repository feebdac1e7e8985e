"""Gate de prevenção de duplicidade (primeira camada de política).

Verificações em ordem, sobre índices filtrados pela janela:
1. DispatchKey já enviada (lembretes liberados após a janela)
2. Mesmo conteúdo já enviado ao cliente
3. Limite diário de mensagens por cliente
4. Cooldown desde a última mensagem
5. Mesmo (pedido, tipo, segmento) no histórico
6. Conflito de hierarquia (tipo anterior após tipo posterior do mesmo pedido)

Falha inesperada = fail-open (permite, categoria ERROR). O gate de segurança
é a camada fail-closed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from dispatch_guard.application.dedupe_index import DedupeIndex
from dispatch_guard.domain.enums import BlockReason, GateCategory
from dispatch_guard.domain.errors import InvalidCustomerError
from dispatch_guard.domain.hashing import (
    content_fingerprint,
    hierarchy_level,
    is_reminder_type,
    make_dispatch_key,
    normalize_customer_id,
)
from dispatch_guard.domain.models import DispatchContext, SentRecord
from dispatch_guard.domain.results import GateResult
from dispatch_guard.observability.logging import get_logger, log_fallback, mask_customer_id

logger: logging.Logger = get_logger(__name__)

_BLOCK_COUNTERS: dict[GateCategory, str] = {
    GateCategory.EXACT_DUPLICATE: "duplicates_blocked",
    GateCategory.CONTENT_DUPLICATE: "content_duplicates_blocked",
    GateCategory.RATE_LIMIT: "rate_limit_blocked",
    GateCategory.COOLDOWN: "cooldown_blocked",
    GateCategory.HIERARCHY_CONFLICT: "hierarchy_conflicts_blocked",
}


class DuplicatePreventionGate:
    """Decide se um envio é permitido com base no histórico recente."""

    def __init__(
        self,
        index: DedupeIndex,
        daily_cap: int = 5,
        cooldown_seconds: float = 300.0,
        default_country_code: str = "91",
        developer_customer_ids: Iterable[str] = (),
    ) -> None:
        self._index = index
        self._daily_cap = daily_cap
        self._cooldown = cooldown_seconds
        self._country_code = default_country_code
        self._developers = {self._normalize_or_raw(c) for c in developer_customer_ids}

    async def start(self) -> None:
        await self._index.start()

    async def shutdown(self) -> None:
        await self._index.shutdown()

    @property
    def window_seconds(self) -> float:
        return self._index.window_seconds

    def _normalize_or_raw(self, customer_id: str) -> str:
        try:
            return normalize_customer_id(customer_id, self._country_code)
        except InvalidCustomerError:
            return customer_id

    async def check(
        self,
        customer_id: str,
        order_id: str,
        message_type: str,
        content: str,
        channel_segment: str = "default",
    ) -> GateResult:
        """Avalia o envio sem alterar os índices."""
        try:
            customer = normalize_customer_id(customer_id, self._country_code)
        except InvalidCustomerError as e:
            return GateResult.deny(BlockReason.INVALID_CUSTOMER, GateCategory.ERROR, error=str(e))

        if customer in self._developers:
            logger.debug("dedupe_developer_bypass", extra={"customer": mask_customer_id(customer)})
            return GateResult.allow(BlockReason.DEVELOPER_BYPASS)

        try:
            return self._evaluate(customer, order_id, message_type, content, channel_segment)
        except Exception as e:
            log_fallback(logger, "duplicate_gate", reason="check_error")
            logger.error(
                "duplicate_gate_check_failed",
                extra={"customer": mask_customer_id(customer), "error": type(e).__name__},
            )
            return GateResult(
                allowed=True,
                reason=BlockReason.CHECK_ERROR,
                category=GateCategory.ERROR,
                detail={"error": str(e)},
            )

    def _evaluate(
        self,
        customer: str,
        order_id: str,
        message_type: str,
        content: str,
        channel_segment: str,
    ) -> GateResult:
        self._index.ensure_loaded()
        now = self._index.now()
        window = self._index.window_seconds
        key = make_dispatch_key(customer, order_id, message_type, channel_segment)
        fingerprint = content_fingerprint(content)

        existing = self._index.sent.get(key)
        if existing is not None:
            elapsed = now - existing.sent_at
            if not (is_reminder_type(message_type) and elapsed > window):
                return GateResult.deny(
                    BlockReason.EXACT_MESSAGE_DUPLICATE,
                    GateCategory.EXACT_DUPLICATE,
                    seconds_since_sent=round(elapsed, 1),
                )

        fingerprint_at = self._index.fingerprint_sent_at(fingerprint, customer)
        if fingerprint_at is not None and now - fingerprint_at < window:
            return GateResult.deny(
                BlockReason.CONTENT_DUPLICATE,
                GateCategory.CONTENT_DUPLICATE,
                seconds_since_sent=round(now - fingerprint_at, 1),
            )

        history = self._index.history_in_window(customer, now)
        if len(history) >= self._daily_cap:
            return GateResult.deny(
                BlockReason.RATE_LIMIT,
                GateCategory.RATE_LIMIT,
                sent_in_window=len(history),
                daily_cap=self._daily_cap,
            )

        if history:
            since_last = now - history[-1].sent_at
            if since_last < self._cooldown:
                return GateResult.deny(
                    BlockReason.COOLDOWN,
                    GateCategory.COOLDOWN,
                    retry_after_seconds=round(self._cooldown - since_last, 1),
                )

        for entry in history:
            if (
                entry.order_id == order_id
                and entry.message_type == message_type
                and entry.channel_segment == channel_segment
            ):
                return GateResult.deny(BlockReason.SIMILAR_MESSAGE, GateCategory.EXACT_DUPLICATE)

        requested_level = hierarchy_level(message_type)
        if requested_level is not None:
            for entry in history:
                if entry.order_id != order_id:
                    continue
                sent_level = hierarchy_level(entry.message_type)
                if sent_level is not None and sent_level > requested_level:
                    return GateResult.deny(
                        BlockReason.MESSAGE_HIERARCHY_CONFLICT,
                        GateCategory.HIERARCHY_CONFLICT,
                        already_sent=entry.message_type,
                    )

        return GateResult.allow()

    async def record(
        self,
        customer_id: str,
        order_id: str,
        message_type: str,
        content: str,
        context: Mapping[str, Any] | DispatchContext | None = None,
        channel_segment: str = "default",
    ) -> SentRecord:
        """Registra envio confirmado (chamar somente após sucesso do canal)."""
        customer = normalize_customer_id(customer_id, self._country_code)
        record = SentRecord(
            dispatch_key=make_dispatch_key(customer, order_id, message_type, channel_segment),
            customer_id=customer,
            order_id=order_id,
            message_type=message_type,
            channel_segment=channel_segment,
            content_fingerprint=content_fingerprint(content),
            sent_at=self._index.now(),
            context=DispatchContext.from_mapping(context),
        )
        self._index.add(record, content)
        logger.info(
            "dedupe_send_recorded",
            extra={
                "customer": mask_customer_id(customer),
                "order_id": order_id,
                "message_type": message_type,
                "key_prefix": record.dispatch_key[:8] + "...",
            },
        )
        return record

    def record_blocked(self, result: GateResult) -> None:
        """Incrementa o contador de bloqueio correspondente à categoria."""
        counter = _BLOCK_COUNTERS.get(result.category)
        if result.allowed or counter is None:
            return
        stats = self._index.statistics
        setattr(stats, counter, getattr(stats, counter) + 1)

    # ------------------------------------------------------------------
    # Consultas e operação
    # ------------------------------------------------------------------

    def get_statistics(self) -> dict[str, Any]:
        stats = self._index.statistics.model_dump()
        stats.update(
            {
                "sent_records": len(self._index.sent),
                "tracked_customers": len(self._index.history),
                "tracked_fingerprints": len(self._index.content),
                "window_seconds": self._index.window_seconds,
                "daily_cap": self._daily_cap,
                "cooldown_seconds": self._cooldown,
            }
        )
        return stats

    def get_customer_history(self, customer_id: str) -> list[dict[str, Any]]:
        """Histórico do cliente dentro da janela (mais antigo primeiro)."""
        customer = normalize_customer_id(customer_id, self._country_code)
        return [e.model_dump() for e in self._index.history_in_window(customer)]

    def was_recently_sent(
        self,
        customer_id: str,
        order_id: str,
        message_type: str,
        channel_segment: str = "default",
        within_seconds: float | None = None,
    ) -> bool:
        customer = normalize_customer_id(customer_id, self._country_code)
        key = make_dispatch_key(customer, order_id, message_type, channel_segment)
        record = self._index.sent.get(key)
        if record is None:
            return False
        limit = self._index.window_seconds if within_seconds is None else within_seconds
        return self._index.now() - record.sent_at < limit

    def perform_cleanup(self) -> dict[str, int]:
        return self._index.cleanup()

    def clear_all_data(self) -> None:
        self._index.clear()
