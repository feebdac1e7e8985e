"""Taxonomia de exceções do núcleo de despacho.

Negações de gate nunca levantam exceção (retornam resultados estruturados).
As exceções abaixo cobrem falhas de entrada, do canal, de locks e de I/O.
"""

from __future__ import annotations


class DispatchGuardError(Exception):
    """Erro base do dispatch_guard."""

    pass


class InvalidCustomerError(DispatchGuardError, ValueError):
    """Identificador de cliente não normalizável (telefone inválido)."""

    pass


class CircuitOpenError(DispatchGuardError):
    """Circuito aberto: chamada ao canal recusada sem ser executada."""

    def __init__(self, retry_after_seconds: float | None = None) -> None:
        self.retry_after_seconds = retry_after_seconds
        detail = "Circuit breaker is OPEN"
        if retry_after_seconds is not None:
            detail += f" (retry after {retry_after_seconds:.1f}s)"
        super().__init__(detail)


class ChannelSendError(DispatchGuardError):
    """Falha do canal de mensagens (transporte, status HTTP ou erro Meta)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class LockContentionError(DispatchGuardError):
    """Lock do recurso não obtido dentro do orçamento de tentativas."""

    def __init__(self, resource_id: str, attempts: int) -> None:
        self.resource_id = resource_id
        self.attempts = attempts
        super().__init__(f"Lock contention on {resource_id} after {attempts} attempt(s)")


class InternalGateError(DispatchGuardError):
    """Falha inesperada dentro de um gate."""

    pass


class StateBackendError(DispatchGuardError):
    """Falha de I/O no backend de estado durável."""

    pass
