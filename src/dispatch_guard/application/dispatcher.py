"""Dispatcher: ponto único de envio de notificações.

Fluxo (dentro do lock do recurso cliente/pedido/tipo):
    gate de segurança -> gate de deduplicação -> circuit breaker -> canal
    -> registro do resultado nos dois gates -> DispatchResult

Nunca levanta exceção: bloqueios, falhas do canal e erros internos viram
DispatchResult com `outcome` distinto (blocked, failed, error).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from dispatch_guard.application.atomic_state import AtomicStateCoordinator
from dispatch_guard.application.duplicate_gate import DuplicatePreventionGate
from dispatch_guard.application.safety_gate import SafetyGate
from dispatch_guard.domain.enums import DispatchTag, ErrorKind, GateCategory
from dispatch_guard.domain.errors import (
    CircuitOpenError,
    InvalidCustomerError,
    LockContentionError,
)
from dispatch_guard.domain.hashing import normalize_customer_id
from dispatch_guard.domain.protocols.channel import MessageChannel
from dispatch_guard.domain.results import DispatchResult
from dispatch_guard.infra.circuit_breaker import CircuitBreaker
from dispatch_guard.infra.write_queue import WriteQueue
from dispatch_guard.observability.context import bind_correlation_id
from dispatch_guard.observability.logging import get_logger, mask_customer_id
from dispatch_guard.observability.timing import timed
from dispatch_guard.utils.ids import new_check_id

logger: logging.Logger = get_logger(__name__)


class Dispatcher:
    """Composição dos gates, breaker, coordenador de locks e canal."""

    def __init__(
        self,
        *,
        safety_gate: SafetyGate,
        duplicate_gate: DuplicatePreventionGate,
        circuit_breaker: CircuitBreaker,
        channel: MessageChannel,
        coordinator: AtomicStateCoordinator,
        write_queue: WriteQueue | None = None,
        safety_enabled: bool = True,
        default_country_code: str = "91",
    ) -> None:
        self._safety = safety_gate
        self._duplicate = duplicate_gate
        self._breaker = circuit_breaker
        self._channel = channel
        self._coordinator = coordinator
        self._writes = write_queue
        self._safety_enabled = safety_enabled
        self._country_code = default_country_code

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._safety.start()
        await self._duplicate.start()
        self._coordinator.start()
        logger.info("dispatcher_started", extra={"safety_enabled": self._safety_enabled})

    async def shutdown(self) -> None:
        await self._coordinator.stop()
        await self._duplicate.shutdown()
        await self._safety.shutdown()
        aclose = getattr(self._channel, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("dispatcher_stopped")

    # ------------------------------------------------------------------
    # Envio
    # ------------------------------------------------------------------

    async def send(
        self,
        customer_id: str,
        order_id: str,
        message_type: str,
        content: str,
        context: Mapping[str, Any] | None = None,
        *,
        channel_segment: str = "default",
    ) -> DispatchResult:
        """Envia a notificação no máximo uma vez por evento lógico."""
        try:
            customer = normalize_customer_id(customer_id, self._country_code)
        except InvalidCustomerError as e:
            logger.warning("dispatch_invalid_customer", extra={"order_id": order_id})
            return DispatchResult(
                success=False,
                tag=DispatchTag.ERROR,
                error=str(e),
                error_kind=ErrorKind.INVALID_CUSTOMER,
            )

        resource_id = f"message:{customer}:{order_id}:{message_type}"

        async def _locked() -> DispatchResult:
            return await self._send_locked(
                customer, order_id, message_type, content, context, channel_segment
            )

        try:
            return await self._coordinator.execute_atomically(resource_id, _locked)
        except LockContentionError as e:
            return DispatchResult(
                success=False,
                tag=DispatchTag.ERROR,
                error=str(e),
                error_kind=ErrorKind.LOCK_CONTENTION,
            )
        except Exception as e:
            logger.exception(
                "dispatch_internal_error",
                extra={"customer": mask_customer_id(customer), "order_id": order_id},
            )
            return DispatchResult(
                success=False,
                tag=DispatchTag.ERROR,
                error=f"{type(e).__name__}: {e}",
                error_kind=ErrorKind.INTERNAL,
            )

    async def _send_locked(
        self,
        customer: str,
        order_id: str,
        message_type: str,
        content: str,
        context: Mapping[str, Any] | None,
        channel_segment: str,
    ) -> DispatchResult:
        if not self._safety_enabled:
            logger.warning(
                "dispatch_safety_bypassed",
                extra={"customer": mask_customer_id(customer), "order_id": order_id},
            )
            return await self._deliver(
                customer, order_id, message_type, content, context, channel_segment,
                check_id=new_check_id(), success_tag=DispatchTag.BYPASSED,
            )

        safety = await self._safety.can_send(
            customer, order_id, message_type, content, dict(context or {}),
            channel_segment=channel_segment,
        )
        with bind_correlation_id(safety.check_id):
            if not safety.allowed:
                await self._record_attempt(
                    customer, order_id, message_type, content, channel_segment,
                    success=False, failure_reason=safety.reason, attempt_id=safety.check_id,
                )
                return self._blocked(safety.reason, safety.category, "safety", safety.check_id)

            duplicate = await self._duplicate.check(
                customer, order_id, message_type, content, channel_segment
            )
            if not duplicate.allowed:
                self._duplicate.record_blocked(duplicate)
                await self._record_attempt(
                    customer, order_id, message_type, content, channel_segment,
                    success=False, failure_reason=duplicate.reason, attempt_id=safety.check_id,
                )
                return self._blocked(duplicate.reason, duplicate.category, "duplicate", safety.check_id)

            return await self._deliver(
                customer, order_id, message_type, content, context, channel_segment,
                check_id=safety.check_id, success_tag=DispatchTag.SENT,
            )

    async def _deliver(
        self,
        customer: str,
        order_id: str,
        message_type: str,
        content: str,
        context: Mapping[str, Any] | None,
        channel_segment: str,
        *,
        check_id: str | None,
        success_tag: DispatchTag,
    ) -> DispatchResult:
        try:
            with timed("channel_send", channel=self._channel.name) as span:
                receipt = await self._breaker.execute(
                    lambda: self._channel.send_raw(customer, content)
                )
                span["outcome"] = "sent"
        except Exception as e:
            kind = ErrorKind.CIRCUIT_OPEN if isinstance(e, CircuitOpenError) else ErrorKind.CHANNEL_FAILURE
            logger.warning(
                "dispatch_channel_failed",
                extra={
                    "customer": mask_customer_id(customer),
                    "order_id": order_id,
                    "message_type": message_type,
                    "error_kind": str(kind),
                },
            )
            await self._record_attempt(
                customer, order_id, message_type, content, channel_segment,
                success=False, failure_reason=str(kind), attempt_id=check_id,
            )
            return DispatchResult(
                success=False,
                tag=DispatchTag.FAILED,
                error=str(e),
                error_kind=kind,
                check_id=check_id,
            )

        await self._record_attempt(
            customer, order_id, message_type, content, channel_segment,
            success=True, failure_reason=None, attempt_id=check_id,
        )
        try:
            await self._duplicate.record(
                customer, order_id, message_type, content, context, channel_segment
            )
        except Exception:
            logger.exception("dispatch_dedupe_record_failed", extra={"order_id": order_id})

        logger.info(
            "dispatch_sent",
            extra={
                "customer": mask_customer_id(customer),
                "order_id": order_id,
                "message_type": message_type,
                "tag": str(success_tag),
            },
        )
        return DispatchResult(
            success=True,
            tag=success_tag,
            message_id=receipt.message_id,
            check_id=check_id,
        )

    async def _record_attempt(
        self,
        customer: str,
        order_id: str,
        message_type: str,
        content: str,
        channel_segment: str,
        *,
        success: bool,
        failure_reason: str | None,
        attempt_id: str | None,
    ) -> None:
        try:
            await self._safety.record_message_sent(
                customer,
                order_id,
                message_type,
                content,
                success=success,
                failure_reason=failure_reason,
                attempt_id=attempt_id,
                channel_segment=channel_segment,
            )
        except Exception:
            logger.exception("dispatch_safety_record_failed", extra={"order_id": order_id})

    @staticmethod
    def _blocked(
        reason: str,
        category: GateCategory,
        blocked_by: str,
        check_id: str,
    ) -> DispatchResult:
        tag = DispatchTag.BLOCKED_PRIMARY if blocked_by == "safety" else DispatchTag.BLOCKED_SECONDARY
        return DispatchResult(
            success=False,
            tag=tag,
            blocked=True,
            block_reason=reason,
            block_category=category,
            blocked_by=blocked_by,
            check_id=check_id,
        )

    # ------------------------------------------------------------------
    # Superfície operacional
    # ------------------------------------------------------------------

    async def activate_kill_switch(self, reason: str) -> None:
        await self._safety.activate_kill_switch(reason)

    async def deactivate_kill_switch(self) -> None:
        await self._safety.deactivate_kill_switch()

    async def get_safety_status(self) -> dict[str, Any]:
        return await self._safety.get_safety_status()

    async def get_statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "duplicate_gate": self._duplicate.get_statistics(),
            "circuit_breaker": self._breaker.get_status(),
            "locks": await self._coordinator.get_lock_status(),
            "safety_enabled": self._safety_enabled,
        }
        if self._writes is not None:
            stats["persistence"] = {
                "pending_writes": self._writes.pending_count,
                "completed_writes": self._writes.completed_writes,
                "failed_writes": self._writes.failed_writes,
                "last_error": self._writes.last_error,
            }
        return stats

    async def clear_all_data(self) -> None:
        """Apaga índices de deduplicação e ledger de segurança (uso operacional)."""
        self._duplicate.clear_all_data()
        self._safety.clear_all_data()
        logger.warning("dispatcher_data_cleared")
