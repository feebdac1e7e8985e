"""Coordenador de estado atômico (locks por recurso).

Responsabilidades:
- Serializar sequências "verificar -> enviar -> registrar" por recurso
- Fila in-process por recurso (asyncio.Lock) com espera limitada
- Lock durável `lock-<recurso>` criado de forma exclusiva no backend
- Reclamar locks expirados (holder que caiu) e varrer expirados periodicamente
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import anyio.to_thread
from pydantic import ValidationError

from dispatch_guard.domain.errors import LockContentionError
from dispatch_guard.domain.models import LockRecord
from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.infra.periodic import PeriodicTask
from dispatch_guard.observability.logging import get_logger
from dispatch_guard.utils.ids import new_lock_id

logger: logging.Logger = get_logger(__name__)

T = TypeVar("T")

LOCK_PREFIX = "lock-"


def lock_document_name(resource_id: str) -> str:
    return f"{LOCK_PREFIX}{resource_id}"


class AtomicStateCoordinator:
    """Locks por recurso com TTL, retry linear e liberação garantida."""

    def __init__(
        self,
        backend: StateBackend,
        lock_timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._backend = backend
        self._lock_timeout = lock_timeout_seconds
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay_seconds
        self._clock = clock or time.time
        self._process_id = os.getpid()

        self._local_locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}
        self._held: dict[str, LockRecord] = {}
        self._sweeper = PeriodicTask("lock-sweep", sweep_interval_seconds, self.cleanup_expired_locks)

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    async def acquire_lock(self, resource_id: str, timeout: float | None = None) -> str:
        """Obtém o lock do recurso e retorna o lock_id.

        Raises:
            LockContentionError: espera local esgotada ou lock durável de outro
                holder ainda válido após as tentativas configuradas
        """
        wait_limit = self._lock_timeout if timeout is None else timeout
        local = self._local_locks.setdefault(resource_id, asyncio.Lock())
        self._waiting[resource_id] = self._waiting.get(resource_id, 0) + 1
        try:
            await asyncio.wait_for(local.acquire(), timeout=wait_limit)
        except TimeoutError:
            logger.warning(
                "lock_wait_timeout",
                extra={"resource": resource_id, "timeout_seconds": wait_limit},
            )
            raise LockContentionError(resource_id, attempts=0) from None
        finally:
            self._waiting[resource_id] -= 1
            if not self._waiting[resource_id]:
                del self._waiting[resource_id]
            self._discard_idle_lock(resource_id)

        try:
            record = await self._create_durable_lock(resource_id, wait_limit)
        except BaseException:
            local.release()
            self._discard_idle_lock(resource_id)
            raise

        self._held[resource_id] = record
        logger.debug("lock_acquired", extra={"resource": resource_id, "lock_id": record.lock_id})
        return record.lock_id

    async def _create_durable_lock(self, resource_id: str, ttl: float) -> LockRecord:
        name = lock_document_name(resource_id)
        for attempt in range(1, self._retry_attempts + 1):
            now = self._clock()
            record = LockRecord(
                resource_id=resource_id,
                lock_id=new_lock_id(),
                acquired_at=now,
                expires_at=now + ttl,
                holder_process_id=self._process_id,
            )
            created = await anyio.to_thread.run_sync(
                self._backend.create_exclusive, name, record.model_dump(mode="json")
            )
            if created:
                return record

            existing = await self._read_lock(name)
            if existing is None or existing.is_expired(self._clock()):
                # Holder anterior caiu: remove e tenta de novo na mesma rodada.
                await anyio.to_thread.run_sync(self._backend.delete, name)
                created = await anyio.to_thread.run_sync(
                    self._backend.create_exclusive, name, record.model_dump(mode="json")
                )
                if created:
                    logger.info("expired_lock_reclaimed", extra={"resource": resource_id})
                    return record

            if attempt < self._retry_attempts:
                await asyncio.sleep(self._retry_delay * attempt)

        logger.warning(
            "lock_contention",
            extra={"resource": resource_id, "attempts": self._retry_attempts},
        )
        raise LockContentionError(resource_id, attempts=self._retry_attempts)

    async def _read_lock(self, name: str) -> LockRecord | None:
        raw = await anyio.to_thread.run_sync(self._backend.load, name)
        if not raw:
            return None
        try:
            return LockRecord.model_validate(raw)
        except ValidationError:
            logger.warning("lock_document_invalid", extra={"doc": name})
            return None

    async def release_lock(self, resource_id: str, lock_id: str) -> bool:
        """Libera o lock. Retorna False se não estava retido com esse lock_id."""
        record = self._held.get(resource_id)
        if record is None or record.lock_id != lock_id:
            return False

        del self._held[resource_id]
        name = lock_document_name(resource_id)
        try:
            current = await self._read_lock(name)
            if current is not None and current.lock_id == lock_id:
                await anyio.to_thread.run_sync(self._backend.delete, name)
        finally:
            local = self._local_locks.get(resource_id)
            if local is not None and local.locked():
                local.release()
            self._discard_idle_lock(resource_id)

        logger.debug("lock_released", extra={"resource": resource_id, "lock_id": lock_id})
        return True

    def _discard_idle_lock(self, resource_id: str) -> None:
        local = self._local_locks.get(resource_id)
        if local is None or local.locked() or resource_id in self._waiting:
            return
        del self._local_locks[resource_id]

    async def execute_atomically(
        self,
        resource_id: str,
        operation: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Executa a operação com o lock do recurso (liberado em qualquer saída)."""
        lock_id = await self.acquire_lock(resource_id, timeout)
        try:
            return await operation()
        finally:
            await self.release_lock(resource_id, lock_id)

    # ------------------------------------------------------------------
    # Manutenção e operação
    # ------------------------------------------------------------------

    async def cleanup_expired_locks(self) -> int:
        """Remove documentos de lock expirados. Retorna quantos foram removidos."""
        names = await anyio.to_thread.run_sync(self._backend.list_names, LOCK_PREFIX)
        now = self._clock()
        removed = 0
        for name in names:
            record = await self._read_lock(name)
            if record is None or record.is_expired(now):
                if await anyio.to_thread.run_sync(self._backend.delete, name):
                    removed += 1
        if removed:
            logger.info("expired_locks_cleaned", extra={"removed": removed})
        return removed

    async def get_lock_status(self) -> dict[str, Any]:
        names = await anyio.to_thread.run_sync(self._backend.list_names, LOCK_PREFIX)
        now = self._clock()
        locks: list[dict[str, Any]] = []
        for name in names:
            record = await self._read_lock(name)
            if record is None:
                continue
            locks.append(
                {
                    "resource_id": record.resource_id,
                    "lock_id": record.lock_id,
                    "holder_process_id": record.holder_process_id,
                    "expires_in_seconds": round(record.expires_at - now, 1),
                    "expired": record.is_expired(now),
                }
            )
        return {
            "total_locks": len(locks),
            "held_by_this_process": len(self._held),
            "lock_timeout_seconds": self._lock_timeout,
            "locks": locks,
        }

    async def force_release_all_locks(self) -> int:
        """Remove todos os locks duráveis e libera os locais (uso operacional)."""
        names = await anyio.to_thread.run_sync(self._backend.list_names, LOCK_PREFIX)
        released = 0
        for name in names:
            if await anyio.to_thread.run_sync(self._backend.delete, name):
                released += 1
        self._held.clear()
        for local in self._local_locks.values():
            if local.locked():
                local.release()
        self._local_locks.clear()
        logger.warning("all_locks_force_released", extra={"released": released})
        return released
