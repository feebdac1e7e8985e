"""Tarefas periódicas canceláveis (limpeza, snapshot, varredura de locks)."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from dispatch_guard.observability.logging import get_logger

logger: logging.Logger = get_logger(__name__)


class PeriodicTask:
    """Executa `fn` a cada `interval_seconds` até stop().

    Erros de uma execução são registrados e não interrompem as seguintes.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], Awaitable[object]],
    ) -> None:
        self.name = name
        self._interval = interval_seconds
        self._fn = fn
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic-{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._fn()
            except Exception:
                logger.exception("periodic_task_failed", extra={"task": self.name})
