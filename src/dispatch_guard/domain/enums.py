"""Enums de domínio para categorias de bloqueio, estados e resultados de despacho."""

from __future__ import annotations

from enum import StrEnum


class GateCategory(StrEnum):
    """Categoria da decisão de um gate (nunca persistida)."""

    NONE = "NONE"
    EXACT_DUPLICATE = "EXACT_DUPLICATE"
    CONTENT_DUPLICATE = "CONTENT_DUPLICATE"
    RATE_LIMIT = "RATE_LIMIT"
    COOLDOWN = "COOLDOWN"
    HIERARCHY_CONFLICT = "HIERARCHY_CONFLICT"
    KILL_SWITCH = "KILL_SWITCH"
    GRACE_PERIOD = "GRACE_PERIOD"
    BUSINESS_HOURS = "BUSINESS_HOURS"
    MESSAGE_RULE = "MESSAGE_RULE"
    ERROR = "ERROR"


class CircuitState(StrEnum):
    """Estados do circuit breaker.

    Transições válidas: CLOSED -> OPEN, OPEN -> HALF_OPEN,
    HALF_OPEN -> CLOSED | OPEN.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class DispatchTag(StrEnum):
    """Marcador do caminho percorrido por um despacho."""

    SENT = "SENT"
    BYPASSED = "BYPASSED"
    BLOCKED_PRIMARY = "BLOCKED_PRIMARY"  # Gate de segurança
    BLOCKED_SECONDARY = "BLOCKED_SECONDARY"  # Gate de deduplicação
    FAILED = "FAILED"
    ERROR = "ERROR"


class ErrorKind(StrEnum):
    """Tipo de erro devolvido ao chamador do Dispatcher."""

    INVALID_CUSTOMER = "INVALID_CUSTOMER"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    CHANNEL_FAILURE = "CHANNEL_FAILURE"
    LOCK_CONTENTION = "LOCK_CONTENTION"
    INTERNAL = "INTERNAL"


class BlockReason(StrEnum):
    """Códigos estáveis de motivo (consumidos por dashboards e testes)."""

    ALLOWED = "ALLOWED"
    DEVELOPER_BYPASS = "DEVELOPER_BYPASS"
    INVALID_CUSTOMER = "INVALID_CUSTOMER"
    CHECK_ERROR = "CHECK_ERROR"

    # Gate de deduplicação
    EXACT_MESSAGE_DUPLICATE = "EXACT_MESSAGE_DUPLICATE"
    CONTENT_DUPLICATE = "CONTENT_DUPLICATE"
    RATE_LIMIT = "RATE_LIMIT"
    COOLDOWN = "COOLDOWN"
    SIMILAR_MESSAGE = "SIMILAR_MESSAGE"
    MESSAGE_HIERARCHY_CONFLICT = "MESSAGE_HIERARCHY_CONFLICT"

    # Gate de segurança
    KILL_SWITCH_ACTIVE = "KILL_SWITCH_ACTIVE"
    STARTUP_GRACE_PERIOD = "STARTUP_GRACE_PERIOD"
    HOURLY_LIMIT_EXCEEDED = "HOURLY_LIMIT_EXCEEDED"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    CONTENT_TOO_SIMILAR = "CONTENT_TOO_SIMILAR"
    OUTSIDE_BUSINESS_HOURS = "OUTSIDE_BUSINESS_HOURS"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    REMINDER_LIMIT_EXCEEDED = "REMINDER_LIMIT_EXCEEDED"
    SAFETY_CHECK_ERROR = "SAFETY_CHECK_ERROR"
