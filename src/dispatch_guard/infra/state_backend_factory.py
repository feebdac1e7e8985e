"""Factory para StateBackend (criação agnóstica ao backend).

Responsabilidades:
- Criar instâncias de StateBackend baseado em config
- Validar clientes obrigatórios
- Registrar escolha de backend
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.infra.state_backend_file import FileStateBackend
from dispatch_guard.infra.state_backend_memory import InMemoryStateBackend
from dispatch_guard.infra.state_backend_redis import RedisStateBackend
from dispatch_guard.observability.logging import get_logger

if TYPE_CHECKING:
    from dispatch_guard.config.settings import Settings

logger: logging.Logger = get_logger(__name__)


def create_state_backend(
    backend: str,
    state_dir: str | None = None,
    redis_client: Any | None = None,
    key_prefix: str = "dispatch_guard:",
) -> StateBackend:
    """Factory para StateBackend.

    Args:
        backend: "file", "redis" ou "memory"
        state_dir: Diretório dos documentos (obrigatório se backend="file")
        redis_client: Cliente Redis (obrigatório se backend="redis")
        key_prefix: Prefixo das chaves Redis

    Returns:
        StateBackend configurado

    Raises:
        ValueError: Se backend inválido ou dependência não fornecida
    """
    backend = backend.lower()

    if backend == "memory":
        logger.warning("Using in-memory state backend (dev only)")
        return InMemoryStateBackend()

    if backend == "file":
        if not state_dir:
            msg = "state_dir required for file backend"
            raise ValueError(msg)
        logger.info("Using file state backend", extra={"state_dir": state_dir})
        return FileStateBackend(state_dir)

    if backend == "redis":
        if redis_client is None:
            msg = "redis_client required for redis backend"
            raise ValueError(msg)
        logger.info("Using Redis state backend")
        return RedisStateBackend(redis_client, key_prefix=key_prefix)

    msg = f"Unknown state backend: {backend}"
    raise ValueError(msg)


def create_state_backend_from_settings(settings: Settings) -> StateBackend:
    """Cria o backend descrito em Settings (cria cliente Redis via REDIS_URL)."""
    redis_client = None
    if settings.state_backend.lower() == "redis":
        if not settings.redis_url:
            msg = "REDIS_URL required for redis backend"
            raise ValueError(msg)
        import redis

        redis_client = redis.Redis.from_url(settings.redis_url)

    return create_state_backend(
        settings.state_backend,
        state_dir=settings.state_dir,
        redis_client=redis_client,
        key_prefix=settings.redis_key_prefix,
    )
