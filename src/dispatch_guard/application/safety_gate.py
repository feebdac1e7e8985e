"""Gate de segurança (camada primária, fail-closed).

Verificações em ordem:
1. Kill switch (documento durável ou WHATSAPP_KILL_SWITCH)
2. Período de carência após o start do processo
3. Horário comercial (opcional)
4. Regras por tipo: campos exigidos do contexto (opcional) e máximo de lembretes
5. Limites absolutos por cliente (hora e dia), só envios bem sucedidos
6. Mesma DispatchKey já enviada com sucesso (lembretes liberados após a janela)
7. Similaridade com as últimas mensagens enviadas ao cliente

Qualquer erro inesperado nega o envio (SAFETY_CHECK_ERROR).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from dispatch_guard.application.safety_ledger import SafetyLedger
from dispatch_guard.domain.enums import BlockReason, GateCategory
from dispatch_guard.domain.errors import InvalidCustomerError
from dispatch_guard.domain.hashing import (
    content_fingerprint,
    is_reminder_type,
    make_dispatch_key,
    normalize_content,
    normalize_customer_id,
)
from dispatch_guard.domain.message_rules import (
    DEFAULT_MESSAGE_RULES,
    BusinessHours,
    MessageRule,
    missing_fields,
)
from dispatch_guard.domain.models import KillSwitchState, SafetyLogEntry
from dispatch_guard.domain.results import SafetyCheckResult
from dispatch_guard.domain.similarity import get_similarity_measure
from dispatch_guard.observability.logging import get_logger, mask_customer_id
from dispatch_guard.utils.ids import derive_attempt_id, new_check_id

logger: logging.Logger = get_logger(__name__)

HOUR_SECONDS = 3600.0
DAY_SECONDS = 86400.0
CONTENT_SAMPLE_LENGTH = 500


class SafetyGate:
    """Camada de segurança independente do gate de deduplicação."""

    def __init__(
        self,
        ledger: SafetyLedger,
        hourly_limit: int = 3,
        daily_limit: int = 10,
        grace_period_seconds: float = 240.0,
        similarity_threshold: float = 0.8,
        similarity_sample_size: int = 5,
        similarity_measure: str = "jaccard",
        kill_switch_override: bool = False,
        default_country_code: str = "91",
        message_rules: Mapping[str, MessageRule] | None = None,
        require_context_fields: bool = False,
        business_hours: BusinessHours | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._ledger = ledger
        self._hourly_limit = hourly_limit
        self._daily_limit = daily_limit
        self._grace_period = grace_period_seconds
        self._similarity_threshold = similarity_threshold
        self._sample_size = similarity_sample_size
        self._similarity_name = similarity_measure
        self._similarity = get_similarity_measure(similarity_measure)
        self._kill_switch_override = kill_switch_override
        self._country_code = default_country_code
        self._rules = dict(DEFAULT_MESSAGE_RULES if message_rules is None else message_rules)
        self._require_context_fields = require_context_fields
        self._business_hours = business_hours
        self._clock = clock or time.time
        self._started_at = self._clock()

    async def start(self) -> None:
        await self._ledger.start()

    async def shutdown(self) -> None:
        await self._ledger.shutdown()

    def grace_period_remaining(self) -> float:
        return max(self._grace_period - (self._clock() - self._started_at), 0.0)

    async def can_send(
        self,
        customer_id: str,
        order_id: str,
        message_type: str,
        content: str,
        context: dict[str, Any] | None = None,
        channel_segment: str = "default",
    ) -> SafetyCheckResult:
        """Avalia o envio; sempre retorna um check_id novo."""
        check_id = new_check_id()

        try:
            customer = normalize_customer_id(customer_id, self._country_code)
        except InvalidCustomerError as e:
            return SafetyCheckResult(
                allowed=False,
                reason=BlockReason.INVALID_CUSTOMER,
                check_id=check_id,
                category=GateCategory.ERROR,
                detail={"error": str(e)},
            )

        try:
            reason, category, detail = await self._evaluate(
                customer, order_id, message_type, content, context, channel_segment
            )
        except Exception as e:
            logger.error(
                "safety_check_failed",
                extra={
                    "check_id": check_id,
                    "customer": mask_customer_id(customer),
                    "error": type(e).__name__,
                },
            )
            return SafetyCheckResult(
                allowed=False,
                reason=BlockReason.SAFETY_CHECK_ERROR,
                check_id=check_id,
                category=GateCategory.ERROR,
                detail={"error": str(e)},
            )

        allowed = category == GateCategory.NONE
        if not allowed:
            logger.info(
                "safety_check_blocked",
                extra={
                    "check_id": check_id,
                    "customer": mask_customer_id(customer),
                    "order_id": order_id,
                    "message_type": message_type,
                    "reason": str(reason),
                },
            )
        return SafetyCheckResult(
            allowed=allowed,
            reason=str(reason),
            check_id=check_id,
            category=category,
            detail=detail,
        )

    async def _evaluate(
        self,
        customer: str,
        order_id: str,
        message_type: str,
        content: str,
        context: dict[str, Any] | None,
        channel_segment: str,
    ) -> tuple[BlockReason, GateCategory, dict[str, Any]]:
        self._ledger.ensure_loaded()

        if await self.is_kill_switch_active():
            return BlockReason.KILL_SWITCH_ACTIVE, GateCategory.KILL_SWITCH, {
                "kill_switch_reason": self._ledger.kill_switch.reason,
            }

        remaining = self.grace_period_remaining()
        if remaining > 0:
            return BlockReason.STARTUP_GRACE_PERIOD, GateCategory.GRACE_PERIOD, {
                "remaining_seconds": round(remaining, 1),
            }

        now = self._ledger.now()
        if self._business_hours is not None and not self._business_hours.is_open(now):
            return BlockReason.OUTSIDE_BUSINESS_HOURS, GateCategory.BUSINESS_HOURS, {
                "local_hour": self._business_hours.local_hour(now),
                "start_hour": self._business_hours.start_hour,
                "end_hour": self._business_hours.end_hour,
            }

        key = make_dispatch_key(customer, order_id, message_type, channel_segment)
        rule = self._rules.get(message_type)
        if rule is not None:
            if self._require_context_fields:
                missing = missing_fields(rule, context)
                if missing:
                    return BlockReason.MISSING_REQUIRED_FIELD, GateCategory.MESSAGE_RULE, {
                        "missing_fields": missing,
                    }
            if rule.max_sends is not None:
                sent = sum(1 for e in self._ledger.successes(customer) if e.dispatch_key == key)
                if sent >= rule.max_sends:
                    return BlockReason.REMINDER_LIMIT_EXCEEDED, GateCategory.MESSAGE_RULE, {
                        "sent_for_order": sent,
                        "limit": rule.max_sends,
                    }

        hourly =len(self._ledger.successes(customer, HOUR_SECONDS))
        if hourly >= self._hourly_limit:
            return BlockReason.HOURLY_LIMIT_EXCEEDED, GateCategory.RATE_LIMIT, {
                "sent_last_hour": hourly,
                "limit": self._hourly_limit,
            }

        daily = self._ledger.successes(customer, DAY_SECONDS)
        if len(daily) >= self._daily_limit:
            return BlockReason.DAILY_LIMIT_EXCEEDED, GateCategory.RATE_LIMIT, {
                "sent_last_day": len(daily),
                "limit": self._daily_limit,
            }

        for entry in self._ledger.successes(customer):
            if entry.dispatch_key != key:
                continue
            if is_reminder_type(message_type) and now - entry.recorded_at > self._ledger.window_seconds:
                continue
            return BlockReason.EXACT_MESSAGE_DUPLICATE, GateCategory.EXACT_DUPLICATE, {
                "seconds_since_sent": round(now - entry.recorded_at, 1),
            }

        for entry in daily[-self._sample_size :]:
            score = self._similarity(content, entry.content_sample)
            if score > self._similarity_threshold:
                return BlockReason.CONTENT_TOO_SIMILAR, GateCategory.CONTENT_DUPLICATE, {
                    "similarity": round(score, 3),
                    "threshold": self._similarity_threshold,
                }

        return BlockReason.ALLOWED, GateCategory.NONE, {}

    async def record_message_sent(
        self,
        customer_id: str,
        order_id: str,
        message_type: str,
        content: str,
        success: bool,
        failure_reason: str | None = None,
        attempt_id: str | None = None,
        channel_segment: str = "default",
    ) -> bool:
        """Registra uma tentativa (enviada, falha ou bloqueada).

        Idempotente por attempt_id; sem attempt_id, deriva um id dos campos da
        tentativa e da janela em que ela ocorreu, de modo que repetições do mesmo
        registro colapsam mas um reenvio legítimo em outra janela é contado.
        Retorna False se a tentativa já constava.
        """
        try:
            customer = normalize_customer_id(customer_id, self._country_code)
        except InvalidCustomerError:
            logger.warning("safety_record_invalid_customer", extra={"order_id": order_id})
            return False

        key = make_dispatch_key(customer, order_id, message_type, channel_segment)
        fingerprint = content_fingerprint(content)
        recorded_at = self._ledger.now()
        if attempt_id is None:
            bucket = int(recorded_at // self._ledger.window_seconds)
            attempt_id = derive_attempt_id(key, fingerprint, success, failure_reason, bucket)

        entry = SafetyLogEntry(
            attempt_id=attempt_id,
            dispatch_key=key,
            order_id=order_id,
            message_type=message_type,
            content_fingerprint=fingerprint,
            content_sample=normalize_content(content)[:CONTENT_SAMPLE_LENGTH],
            success=success,
            failure_reason=failure_reason,
            recorded_at=recorded_at,
        )
        recorded = self._ledger.add(customer, entry)
        if not recorded:
            logger.debug("safety_attempt_already_recorded", extra={"attempt_id": attempt_id})
        return recorded

    # ------------------------------------------------------------------
    # Kill switch
    # ------------------------------------------------------------------

    async def is_kill_switch_active(self) -> bool:
        if self._kill_switch_override:
            return True
        state = await self._ledger.read_kill_switch()
        return state.active

    async def activate_kill_switch(self, reason: str) -> None:
        await self._ledger.write_kill_switch(
            KillSwitchState(active=True, reason=reason, activated_at=self._clock())
        )
        logger.critical("kill_switch_activated", extra={"kill_switch_reason": reason})

    async def deactivate_kill_switch(self) -> None:
        await self._ledger.write_kill_switch(KillSwitchState(active=False))
        logger.warning("kill_switch_deactivated")

    async def get_safety_status(self) -> dict[str, Any]:
        return {
            "kill_switch_active": await self.is_kill_switch_active(),
            "kill_switch_reason": self._ledger.kill_switch.reason,
            "kill_switch_override": self._kill_switch_override,
            "grace_period_remaining_seconds": round(self.grace_period_remaining(), 1),
            "limits": {
                "hourly": self._hourly_limit,
                "daily": self._daily_limit,
                "similarity_threshold": self._similarity_threshold,
                "similarity_sample_size": self._sample_size,
                "similarity_measure": self._similarity_name,
            },
            "message_rules": {
                "require_context_fields": self._require_context_fields,
                "max_sends": {t: r.max_sends for t, r in self._rules.items() if r.max_sends is not None},
            },
            "business_hours": None
            if self._business_hours is None
            else [self._business_hours.start_hour, self._business_hours.end_hour],
            "ledger": self._ledger.counts(),
        }

    def clear_all_data(self) -> None:
        """Apaga o ledger (não altera o kill switch)."""
        self._ledger.clear()
