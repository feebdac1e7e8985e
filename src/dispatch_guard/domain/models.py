"""Modelos de domínio persistidos (documentos JSON editáveis à mão).

Timestamps em epoch seconds (float). Campos em snake_case.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

CONTEXT_VALUE_MAX_LENGTH = 100


class DispatchContext(BaseModel):
    """Contexto do pedido anexado ao registro de envio.

    Somente campos da allow-list são mantidos; valores viram str e são
    truncados em 100 caracteres. Chaves desconhecidas são descartadas.
    """

    model_config = ConfigDict(extra="ignore")

    customer_name: str | None = None
    garment_type: str | None = None
    fabric_type: str | None = None
    total_amount: str | None = None
    advance_amount: str | None = None
    remaining_amount: str | None = None
    delivery_date: str | None = None
    status: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_and_truncate(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)[:CONTEXT_VALUE_MAX_LENGTH]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | DispatchContext | None) -> DispatchContext:
        """Constrói a partir de um dict arbitrário (ou reaproveita a instância)."""
        if isinstance(data, DispatchContext):
            return data
        return cls.model_validate(dict(data or {}))


class SentRecord(BaseModel):
    """Envio confirmado, indexado pela DispatchKey."""

    dispatch_key: str
    customer_id: str
    order_id: str
    message_type: str
    channel_segment: str = "default"
    content_fingerprint: str
    sent_at: float
    context: DispatchContext = Field(default_factory=DispatchContext)


class ContentIndexEntry(BaseModel):
    """Índice de fingerprint de conteúdo -> clientes que o receberam."""

    preview: str = ""
    customers: list[str] = Field(default_factory=list)
    customer_timestamps: dict[str, float] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    """Item do histórico por cliente (ordenado por sent_at)."""

    order_id: str
    message_type: str
    channel_segment: str = "default"
    content_fingerprint: str
    sent_at: float


class DedupeStatistics(BaseModel):
    """Contadores do gate de deduplicação."""

    total_messages_sent: int = 0
    duplicates_blocked: int = 0
    rate_limit_blocked: int = 0
    cooldown_blocked: int = 0
    content_duplicates_blocked: int = 0
    hierarchy_conflicts_blocked: int = 0
    last_cleanup: float | None = None


class SafetyLogEntry(BaseModel):
    """Tentativa registrada no ledger de segurança (enviada, falha ou bloqueada)."""

    attempt_id: str
    dispatch_key: str
    order_id: str
    message_type: str
    content_fingerprint: str
    content_sample: str = ""
    success: bool
    failure_reason: str | None = None
    recorded_at: float


class KillSwitchState(BaseModel):
    """Estado durável do kill switch."""

    active: bool = False
    reason: str | None = None
    activated_at: float | None = None


class LockRecord(BaseModel):
    """Lock durável de um recurso. Expirado equivale a ausente."""

    resource_id: str
    lock_id: str
    acquired_at: float
    expires_at: float
    holder_process_id: int

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now
