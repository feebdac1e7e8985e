"""Resultados estruturados (não persistidos) dos gates, canal e Dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dispatch_guard.domain.enums import BlockReason, DispatchTag, ErrorKind, GateCategory


@dataclass(slots=True, frozen=True)
class GateResult:
    """Decisão do gate de deduplicação."""

    allowed: bool
    reason: str
    category: GateCategory = GateCategory.NONE
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, reason: str = BlockReason.ALLOWED, **detail: Any) -> GateResult:
        return cls(allowed=True, reason=str(reason), category=GateCategory.NONE, detail=detail)

    @classmethod
    def deny(cls, reason: str, category: GateCategory, **detail: Any) -> GateResult:
        return cls(allowed=False, reason=str(reason), category=category, detail=detail)


@dataclass(slots=True, frozen=True)
class SafetyCheckResult:
    """Decisão do gate de segurança; check_id correlaciona os logs da tentativa."""

    allowed: bool
    reason: str
    check_id: str
    category: GateCategory = GateCategory.NONE
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ChannelReceipt:
    """Confirmação do canal após envio aceito."""

    message_id: str


@dataclass(slots=True, frozen=True)
class DispatchResult:
    """Resultado final devolvido pelo Dispatcher (nunca levanta exceção)."""

    success: bool
    tag: DispatchTag
    message_id: str | None = None
    blocked: bool = False
    block_reason: str | None = None
    block_category: GateCategory | None = None
    blocked_by: str | None = None  # "safety" | "duplicate"
    error: str | None = None
    error_kind: ErrorKind | None = None
    check_id: str | None = None

    @property
    def outcome(self) -> str:
        """sent | blocked (política) | failed (canal) | error (interno)."""
        if self.success:
            return "sent"
        if self.blocked:
            return "blocked"
        if self.tag == DispatchTag.FAILED:
            return "failed"
        return "error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message_id": self.message_id,
            "blocked": self.blocked,
            "block_reason": self.block_reason,
            "block_category": self.block_category,
            "blocked_by": self.blocked_by,
            "tag": self.tag,
            "error": self.error,
            "error_kind": self.error_kind,
            "check_id": self.check_id,
            "outcome": self.outcome,
        }
