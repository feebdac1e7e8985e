"""Ledger do gate de segurança (tentativas por cliente e kill switch).

Responsabilidades:
- Registrar cada tentativa (enviada, falha, bloqueada) uma única vez por attempt_id
- Persistir o ledger via WriteQueue e o kill switch de forma imediata
- Podar tentativas mais antigas que 7x a janela de duplicidade

Estado independente do DedupeIndex: os dois gates não compartilham documentos.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import anyio.to_thread
from pydantic import ValidationError

from dispatch_guard.domain.errors import InternalGateError, StateBackendError
from dispatch_guard.domain.models import KillSwitchState, SafetyLogEntry
from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.infra.periodic import PeriodicTask
from dispatch_guard.infra.write_queue import WriteQueue
from dispatch_guard.observability.logging import get_logger, log_fallback

logger: logging.Logger = get_logger(__name__)

DOC_SAFETY_LEDGER = "safety-ledger"
DOC_KILL_SWITCH = "kill-switch"

LEDGER_RETENTION_FACTOR = 7


class SafetyLedger:
    """Store do gate de segurança."""

    def __init__(
        self,
        backend: StateBackend,
        write_queue: WriteQueue,
        window_seconds: float = 86400.0,
        cleanup_interval_seconds: float = 3600.0,
        sync_interval_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._backend = backend
        self._writes = write_queue
        self.window_seconds = window_seconds
        self._clock = clock or time.time

        self.entries: dict[str, list[SafetyLogEntry]] = {}
        self._attempt_ids: set[str] = set()
        self.kill_switch = KillSwitchState()
        self._loaded = False

        self._maintenance = [
            PeriodicTask("safety-cleanup", cleanup_interval_seconds, self.run_cleanup),
            PeriodicTask("safety-sync", sync_interval_seconds, self.run_snapshot),
        ]

    def now(self) -> float:
        return self._clock()

    async def start(self) -> None:
        await self.load()
        for task in self._maintenance:
            task.start()

    async def load(self) -> None:
        try:
            raw = await anyio.to_thread.run_sync(self._backend.load, DOC_SAFETY_LEDGER)
            self.entries = {
                customer: [SafetyLogEntry.model_validate(e) for e in items]
                for customer, items in (raw or {}).items()
            }
        except (StateBackendError, ValidationError, AttributeError, TypeError) as e:
            log_fallback(logger, "safety_ledger", reason=f"load_error:{type(e).__name__}")
            self.entries = {}

        self._attempt_ids = {e.attempt_id for items in self.entries.values() for e in items}
        await self.read_kill_switch()
        self._loaded = True
        logger.info(
            "safety_ledger_loaded",
            extra={
                "customers": len(self.entries),
                "attempts": len(self._attempt_ids),
                "kill_switch_active": self.kill_switch.active,
            },
        )

    async def shutdown(self) -> None:
        for task in self._maintenance:
            await task.stop()
        if self._loaded:
            self.schedule_snapshot()
            await self._writes.flush()

    def ensure_loaded(self) -> None:
        if not self._loaded:
            raise InternalGateError("SafetyLedger used before load()")

    # ------------------------------------------------------------------
    # Kill switch (documento relido a cada verificação)
    # ------------------------------------------------------------------

    async def read_kill_switch(self) -> KillSwitchState:
        """Relê o documento do kill switch (edições manuais valem imediatamente)."""
        raw = await anyio.to_thread.run_sync(self._backend.load, DOC_KILL_SWITCH)
        self.kill_switch = KillSwitchState.model_validate(raw) if raw else KillSwitchState()
        return self.kill_switch

    async def write_kill_switch(self, state: KillSwitchState) -> None:
        await anyio.to_thread.run_sync(
            self._backend.save, DOC_KILL_SWITCH, state.model_dump(mode="json")
        )
        self.kill_switch = state

    # ------------------------------------------------------------------
    # Tentativas
    # ------------------------------------------------------------------

    def has_attempt(self, attempt_id: str) -> bool:
        return attempt_id in self._attempt_ids

    def add(self, customer_id: str, entry: SafetyLogEntry) -> bool:
        """Registra tentativa. Retorna False se o attempt_id já constava."""
        self.ensure_loaded()
        if entry.attempt_id in self._attempt_ids:
            return False
        self._attempt_ids.add(entry.attempt_id)
        self.entries.setdefault(customer_id, []).append(entry)
        self.schedule_snapshot()
        return True

    def successes(self, customer_id: str, within_seconds: float | None = None) -> list[SafetyLogEntry]:
        """Envios bem sucedidos do cliente (mais antigo primeiro)."""
        now = self.now()
        return [
            e
            for e in self.entries.get(customer_id, [])
            if e.success and (within_seconds is None or now - e.recorded_at < within_seconds)
        ]

    def counts(self) -> dict[str, int]:
        total = sum(len(items) for items in self.entries.values())
        sent = sum(1 for items in self.entries.values() for e in items if e.success)
        return {"customers": len(self.entries), "attempts": total, "successful": sent}

    def clear(self) -> None:
        self.entries = {}
        self._attempt_ids = set()
        self.schedule_snapshot()

    # ------------------------------------------------------------------
    # Manutenção
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        cutoff = self.now() - LEDGER_RETENTION_FACTOR * self.window_seconds
        removed = 0
        for customer in list(self.entries):
            kept = [e for e in self.entries[customer] if e.recorded_at >= cutoff]
            removed += len(self.entries[customer]) - len(kept)
            if kept:
                self.entries[customer] = kept
            else:
                del self.entries[customer]
        self._attempt_ids = {e.attempt_id for items in self.entries.values() for e in items}
        if removed:
            self.schedule_snapshot()
        logger.info("safety_ledger_cleanup_completed", extra={"removed_attempts": removed})
        return removed

    async def run_cleanup(self) -> None:
        self.cleanup()

    async def run_snapshot(self) -> None:
        self.schedule_snapshot()

    def schedule_snapshot(self) -> None:
        self._writes.submit(DOC_SAFETY_LEDGER, self._serialize)

    def _serialize(self) -> dict[str, Any]:
        return {
            customer: [e.model_dump(mode="json") for e in items]
            for customer, items in self.entries.items()
        }
