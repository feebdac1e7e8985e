"""Camada de infraestrutura: backends de estado, resiliência e tarefas.

Este módulo exporta:

- State: InMemoryStateBackend, FileStateBackend, RedisStateBackend, create_state_backend
- Resiliência: CircuitBreaker, CircuitBreakerConfig
- Persistência assíncrona: WriteQueue
- Manutenção: PeriodicTask

Uso típico:
    from dispatch_guard.infra import create_state_backend, CircuitBreaker

Regras:
- Infraestrutura não decide regra de negócio
- Logs estruturados sem PII
"""

from dispatch_guard.infra.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from dispatch_guard.infra.periodic import PeriodicTask
from dispatch_guard.infra.state_backend_factory import (
    create_state_backend,
    create_state_backend_from_settings,
)
from dispatch_guard.infra.state_backend_file import FileStateBackend
from dispatch_guard.infra.state_backend_memory import InMemoryStateBackend
from dispatch_guard.infra.state_backend_redis import RedisStateBackend
from dispatch_guard.infra.write_queue import WriteQueue

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "FileStateBackend",
    "InMemoryStateBackend",
    "PeriodicTask",
    "RedisStateBackend",
    "WriteQueue",
    "create_state_backend",
    "create_state_backend_from_settings",
]
