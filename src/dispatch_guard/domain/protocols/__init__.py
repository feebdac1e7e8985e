"""Re-exports dos Protocolos de domínio para uso por Application."""

from __future__ import annotations

from dispatch_guard.domain.protocols.channel import MessageChannel
from dispatch_guard.domain.protocols.state_backend import StateBackend

__all__ = [
    "MessageChannel",
    "StateBackend",
]
