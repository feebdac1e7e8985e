from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from dispatch_guard.domain.enums import CircuitState
from dispatch_guard.domain.errors import CircuitOpenError
from dispatch_guard.observability.logging import get_logger

logger: logging.Logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuração do circuit breaker com defaults conservadores."""

    enabled: bool = True
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 60.0
    half_open_max_calls: int = 1


class CircuitBreaker:
    """Circuit breaker por canal (estado em memória, CLOSED após restart).

    - CLOSED: repassa chamadas; falhas consecutivas abrem o circuito.
    - OPEN: recusa com CircuitOpenError sem invocar a operação; após
      recovery_timeout desde a última falha passa a HALF_OPEN.
    - HALF_OPEN: uma única chamada de prova; sucesso fecha, falha reabre.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
        name: str = "channel",
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or time.monotonic
        self._name = name
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count: int = 0
        self._success_count: int = 0
        self._last_failure_time: float | None = None
        self._half_open_calls: int = 0

        self._total_requests: int = 0
        self._total_failures: int = 0
        self._circuit_open_events: int = 0

    @property
    def state(self) -> CircuitState:
        """Retorna estado atual (para observabilidade e testes)."""

        return self._state

    @property
    def failure_count(self) -> int:
        """Quantidade de falhas consecutivas registradas."""

        return self._failure_count

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Executa a operação protegida pelo circuito.

        Raises:
            CircuitOpenError: circuito aberto ou prova half-open já em curso
            Exception: qualquer erro da própria operação (após registrá-lo)
        """

        if not await self.allow_request():
            raise CircuitOpenError(self._retry_after())

        try:
            result = await operation()
        except Exception:
            await self.record_failure()
            raise
        except BaseException:
            # Cancelamento devolve a vaga de prova sem contar falha.
            self._release_half_open_slot()
            raise

        await self.record_success()
        return result

    async def allow_request(self) -> bool:
        """Determina se a requisição pode prosseguir.

        - Se desabilitado, sempre permite.
        - Se aberto e dentro do timeout, bloqueia.
        - Após timeout, entra em half-open limitando chamadas de prova.
        """

        async with self._lock:
            self._total_requests += 1

            if not self._config.enabled:
                return True

            if self._state == CircuitState.OPEN:
                last = self._last_failure_time or self._clock()
                if self._clock() - last <= self._config.recovery_timeout_seconds:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._half_open_calls = 0

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self._config.half_open_max_calls:
                    return False
                self._half_open_calls += 1

            return True

    async def record_success(self) -> CircuitState:
        """Reseta contador e fecha o circuito após sucesso."""

        async with self._lock:
            self._success_count += 1
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)
            self._failure_count = 0
            self._half_open_calls = 0
            return self._state

    async def record_failure(self) -> CircuitState:
        """Registra falha e abre o circuito conforme política."""

        async with self._lock:
            self._total_failures += 1
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if not self._config.enabled:
                return self._state

            if self._state == CircuitState.HALF_OPEN:
                self._trip()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self._config.failure_threshold
            ):
                self._trip()
            return self._state

    def reset(self) -> None:
        """Volta a CLOSED zerando contadores de falha (uso operacional)."""

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0
        logger.info("circuit_breaker_reset", extra={"breaker": self._name})

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "state": self._state,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_requests": self._total_requests,
            "total_failures": self._total_failures,
            "circuit_open_events": self._circuit_open_events,
            "last_failure_time": self._last_failure_time,
        }

    def _release_half_open_slot(self) -> None:
        if self._state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
            self._half_open_calls -= 1
            logger.info("circuit_breaker_half_open_slot_released", extra={"breaker": self._name})

    def _retry_after(self) -> float | None:
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return None
        elapsed = self._clock() - self._last_failure_time
        return max(self._config.recovery_timeout_seconds - elapsed, 0.0)

    def _trip(self) -> None:
        self._transition(CircuitState.OPEN)
        self._half_open_calls = 0
        self._circuit_open_events += 1

    def _transition(self, new_state: CircuitState) -> None:
        logger.warning(
            "circuit_breaker_transition",
            extra={
                "breaker": self._name,
                "from_state": str(self._state),
                "to_state": str(new_state),
                "failure_count": self._failure_count,
            },
        )
        self._state = new_state
