"""Regras por tipo de mensagem aplicadas pelo gate de segurança.

Cada tipo pode exigir campos do DispatchContext e limitar quantas vezes a
mesma DispatchKey é enviada com sucesso (lembretes). Tipos sem regra passam.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from dispatch_guard.domain.models import DispatchContext


@dataclass(slots=True, frozen=True)
class MessageRule:
    required_fields: tuple[str, ...] = ()
    max_sends: int | None = None


DEFAULT_MESSAGE_RULES: dict[str, MessageRule] = {
    "welcome": MessageRule(required_fields=("customer_name",)),
    "confirmation": MessageRule(required_fields=("customer_name", "garment_type", "delivery_date")),
    "ready": MessageRule(required_fields=("customer_name",)),
    "delivery": MessageRule(required_fields=("customer_name",)),
    "pickup_reminder": MessageRule(required_fields=("customer_name",), max_sends=3),
    "payment_reminder": MessageRule(required_fields=("customer_name", "remaining_amount"), max_sends=5),
    "fabric_welcome": MessageRule(required_fields=("customer_name", "fabric_type")),
    "fabric_purchase": MessageRule(required_fields=("customer_name", "fabric_type", "total_amount")),
}


def missing_fields(
    rule: MessageRule, context: Mapping[str, Any] | DispatchContext | None
) -> list[str]:
    """Campos exigidos ausentes ou vazios no contexto, na ordem da regra."""
    ctx = DispatchContext.from_mapping(context)
    return [name for name in rule.required_fields if not (getattr(ctx, name, None) or "").strip()]


@dataclass(slots=True, frozen=True)
class BusinessHours:
    """Janela [start_hour, end_hour) no fuso de `utc_offset_minutes`."""

    start_hour: int = 9
    end_hour: int = 20
    utc_offset_minutes: int = 330

    def local_hour(self, epoch_seconds: float) -> int:
        tz = timezone(timedelta(minutes=self.utc_offset_minutes))
        return datetime.fromtimestamp(epoch_seconds, tz).hour

    def is_open(self, epoch_seconds: float) -> bool:
        return self.start_hour <= self.local_hour(epoch_seconds) < self.end_hour
