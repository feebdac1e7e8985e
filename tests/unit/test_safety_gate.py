"""Testes unitários para application/safety_gate.py e safety_ledger.py."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from dispatch_guard.application.safety_gate import SafetyGate
from dispatch_guard.application.safety_ledger import (
    DOC_KILL_SWITCH,
    DOC_SAFETY_LEDGER,
    SafetyLedger,
)
from dispatch_guard.domain.enums import BlockReason, GateCategory
from dispatch_guard.domain.errors import StateBackendError
from dispatch_guard.domain.message_rules import BusinessHours, MessageRule

from conftest import CUSTOMER, FakeClock

DAY = 86400.0


@pytest_asyncio.fixture
async def safety_factory(backend, write_queue, clock):
    """Constrói SafetyGate iniciado (sem carência por padrão)."""
    created: list[SafetyGate] = []

    async def _build(**kwargs: Any) -> SafetyGate:
        ledger = SafetyLedger(backend, write_queue, window_seconds=DAY, clock=clock)
        kwargs.setdefault("grace_period_seconds", 0)
        gate = SafetyGate(ledger, clock=clock, **kwargs)
        await gate.start()
        created.append(gate)
        return gate

    yield _build
    for gate in created:
        await gate.shutdown()


async def _sent(gate: SafetyGate, order_id: str, content: str, message_type: str = "welcome") -> None:
    await gate.record_message_sent(CUSTOMER, order_id, message_type, content, success=True)


# ============================================================
# Kill switch e carência
# ============================================================


class TestKillSwitch:
    """Kill switch durável."""

    @pytest.mark.asyncio
    async def test_activate_blocks_everything(self, safety_factory) -> None:
        gate = await safety_factory()
        await gate.activate_kill_switch("incidente de spam")

        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")

        assert result.allowed is False
        assert result.reason == BlockReason.KILL_SWITCH_ACTIVE
        assert result.category == GateCategory.KILL_SWITCH
        assert result.detail["kill_switch_reason"] == "incidente de spam"

    @pytest.mark.asyncio
    async def test_deactivate_restores_sending(self, safety_factory) -> None:
        gate = await safety_factory()
        await gate.activate_kill_switch("teste")
        await gate.deactivate_kill_switch()

        assert (await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")).allowed is True

    @pytest.mark.asyncio
    async def test_hand_edited_document_applies_immediately(self, safety_factory, backend) -> None:
        gate = await safety_factory()
        assert (await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")).allowed is True

        backend.save(DOC_KILL_SWITCH, {"active": True, "reason": "manual"})

        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")
        assert result.reason == BlockReason.KILL_SWITCH_ACTIVE

    @pytest.mark.asyncio
    async def test_environment_override(self, safety_factory) -> None:
        gate = await safety_factory(kill_switch_override=True)

        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")
        assert result.reason == BlockReason.KILL_SWITCH_ACTIVE
        assert (await gate.get_safety_status())["kill_switch_override"] is True

    @pytest.mark.asyncio
    async def test_kill_switch_survives_restart(self, safety_factory) -> None:
        gate = await safety_factory()
        await gate.activate_kill_switch("persistido")

        restarted = await safety_factory()
        assert await restarted.is_kill_switch_active() is True


class TestGracePeriod:
    @pytest.mark.asyncio
    async def test_blocked_during_grace_period(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory(grace_period_seconds=240)
        clock.advance(100)

        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")

        assert result.reason == BlockReason.STARTUP_GRACE_PERIOD
        assert result.detail["remaining_seconds"] == pytest.approx(140.0)

    @pytest.mark.asyncio
    async def test_allowed_when_grace_period_ends(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory(grace_period_seconds=240)
        clock.advance(240)

        assert (await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")).allowed is True
        assert gate.grace_period_remaining() == 0.0


# ============================================================
# Limites absolutos
# ============================================================


class TestLimits:
    @pytest.mark.asyncio
    async def test_hourly_limit(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory(hourly_limit=3, daily_limit=10)
        for i in range(3):
            await _sent(gate, f"O{i}", f"Hello {i}")

        result = await gate.can_send(CUSTOMER, "O3", "welcome", "Hello 3")
        assert result.reason == BlockReason.HOURLY_LIMIT_EXCEEDED
        assert result.category == GateCategory.RATE_LIMIT

        clock.advance(3600)
        assert (await gate.can_send(CUSTOMER, "O3", "welcome", "Hello 3")).allowed is True

    @pytest.mark.asyncio
    async def test_daily_limit(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory(hourly_limit=100, daily_limit=3)
        for i in range(3):
            await _sent(gate, f"O{i}", f"Hello {i}")
            clock.advance(3600)

        result = await gate.can_send(CUSTOMER, "O3", "welcome", "Hello 3")
        assert result.reason == BlockReason.DAILY_LIMIT_EXCEEDED
        assert result.detail["sent_last_day"] == 3

    @pytest.mark.asyncio
    async def test_failed_attempts_do_not_count(self, safety_factory) -> None:
        gate = await safety_factory(hourly_limit=2)
        for i in range(5):
            await gate.record_message_sent(
                CUSTOMER, f"O{i}", "welcome", f"Hello {i}", success=False, failure_reason="503"
            )

        assert (await gate.can_send(CUSTOMER, "O9", "welcome", "Hello 9")).allowed is True

    @pytest.mark.asyncio
    async def test_limits_are_per_customer(self, safety_factory) -> None:
        gate = await safety_factory(hourly_limit=1)
        await _sent(gate, "O1", "Hello 1")

        assert (await gate.can_send("919999999999", "O1", "welcome", "Hello 1")).allowed is True


# ============================================================
# Duplicidade e similaridade
# ============================================================


class TestContentChecks:
    @pytest.mark.asyncio
    async def test_exact_key_already_sent(self, safety_factory) -> None:
        gate = await safety_factory()
        await _sent(gate, "A1", "Hello A")

        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")
        assert result.reason == BlockReason.EXACT_MESSAGE_DUPLICATE

    @pytest.mark.asyncio
    async def test_reminder_blocked_at_exact_window(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory()
        await _sent(gate, "A1", "Please pick up A1", message_type="pickup_reminder")
        clock.advance(DAY)

        result = await gate.can_send(CUSTOMER, "A1", "pickup_reminder", "Please pick up A1")
        assert result.reason == BlockReason.EXACT_MESSAGE_DUPLICATE

    @pytest.mark.asyncio
    async def test_reminder_allowed_after_window(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory()
        await _sent(gate, "A1", "Please pick up A1", message_type="pickup_reminder")
        clock.advance(DAY + 1)

        result = await gate.can_send(CUSTOMER, "A1", "pickup_reminder", "Please pick up A1")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_similar_content_is_blocked(self, safety_factory) -> None:
        gate = await safety_factory(similarity_threshold=0.8)
        await _sent(gate, "A1", "Your order A1 is ready for pickup at 10:30", message_type="ready")

        result = await gate.can_send(
            CUSTOMER, "A2", "ready", "Your order A1 is ready for pickup at 16:05"
        )

        assert result.allowed is False
        assert result.reason == BlockReason.CONTENT_TOO_SIMILAR
        assert result.detail["similarity"] == 1.0

    @pytest.mark.asyncio
    async def test_different_content_is_allowed(self, safety_factory) -> None:
        gate = await safety_factory(similarity_threshold=0.8)
        await _sent(gate, "A1", "Welcome to the tailoring shop")

        result = await gate.can_send(CUSTOMER, "A1", "confirmation", "Payment of 1200 received")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_only_recent_samples_are_compared(self, safety_factory) -> None:
        gate = await safety_factory(similarity_sample_size=1)
        await _sent(gate, "A1", "alpha beta gamma")
        await _sent(gate, "A2", "delta epsilon")

        result = await gate.can_send(CUSTOMER, "A3", "welcome", "alpha beta gamma")
        assert result.allowed is True


# ============================================================
# Regras por tipo e horário comercial
# ============================================================


class TestMessageRules:
    """Campos exigidos e máximo de lembretes por pedido."""

    @pytest.mark.asyncio
    async def test_pickup_reminders_capped_per_order(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory()
        for _ in range(3):
            await _sent(gate, "A1", "Please pick up A1", message_type="pickup_reminder")
            clock.advance(DAY + 1)

        result = await gate.can_send(CUSTOMER, "A1", "pickup_reminder", "Please pick up A1")

        assert result.allowed is False
        assert result.reason == BlockReason.REMINDER_LIMIT_EXCEEDED
        assert result.category == GateCategory.MESSAGE_RULE
        assert result.detail == {"sent_for_order": 3, "limit": 3}

        other = await gate.can_send(CUSTOMER, "A2", "pickup_reminder", "Please pick up A2")
        assert other.allowed is True

    @pytest.mark.asyncio
    async def test_failed_reminders_do_not_count(self, safety_factory) -> None:
        gate = await safety_factory(message_rules={"payment_reminder": MessageRule(max_sends=1)})
        await gate.record_message_sent(
            CUSTOMER, "A1", "payment_reminder", "Balance 400 due", success=False, failure_reason="503"
        )

        result = await gate.can_send(CUSTOMER, "A1", "payment_reminder", "Balance 400 due")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_custom_limit(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory(message_rules={"payment_reminder": MessageRule(max_sends=1)})
        await _sent(gate, "A1", "Balance 400 due", message_type="payment_reminder")
        clock.advance(DAY + 1)

        result = await gate.can_send(CUSTOMER, "A1", "payment_reminder", "Balance 400 due")
        assert result.reason == BlockReason.REMINDER_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_required_fields_are_ignored_by_default(self, safety_factory) -> None:
        gate = await safety_factory()
        result = await gate.can_send(CUSTOMER, "A1", "confirmation", "Order A1 confirmed")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_missing_fields_block_when_enforced(self, safety_factory) -> None:
        gate = await safety_factory(require_context_fields=True)

        result = await gate.can_send(
            CUSTOMER,
            "A1",
            "confirmation",
            "Order A1 confirmed",
            context={"customer_name": "Ravi", "garment_type": "  "},
        )

        assert result.reason == BlockReason.MISSING_REQUIRED_FIELD
        assert result.category == GateCategory.MESSAGE_RULE
        assert result.detail["missing_fields"] == ["garment_type", "delivery_date"]

    @pytest.mark.asyncio
    async def test_complete_context_is_allowed(self, safety_factory) -> None:
        gate = await safety_factory(require_context_fields=True)
        context = {"customer_name": "Ravi", "garment_type": "kurta", "delivery_date": "2025-10-20"}

        result = await gate.can_send(
            CUSTOMER, "A1", "confirmation", "Order A1 confirmed", context=context
        )
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_type_without_rule_passes(self, safety_factory) -> None:
        gate = await safety_factory(require_context_fields=True)
        result = await gate.can_send(CUSTOMER, "A1", "festival_offer", "Diwali offer")
        assert result.allowed is True


class TestBusinessHours:
    # START_TIME corresponde a 08:53:20 UTC.

    @pytest.mark.asyncio
    async def test_blocked_before_opening(self, safety_factory) -> None:
        gate = await safety_factory(business_hours=BusinessHours(utc_offset_minutes=0))

        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")

        assert result.reason == BlockReason.OUTSIDE_BUSINESS_HOURS
        assert result.category == GateCategory.BUSINESS_HOURS
        assert result.detail["local_hour"] == 8

    @pytest.mark.asyncio
    async def test_window_is_start_inclusive_end_exclusive(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory(business_hours=BusinessHours(utc_offset_minutes=0))

        clock.advance(400)
        assert (await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")).allowed is True

        clock.advance(11 * 3600)
        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")
        assert result.reason == BlockReason.OUTSIDE_BUSINESS_HOURS

    @pytest.mark.asyncio
    async def test_offset_shifts_local_hour(self, safety_factory) -> None:
        gate = await safety_factory(business_hours=BusinessHours(utc_offset_minutes=330))
        assert (await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")).allowed is True


# ============================================================
# Registro de tentativas
# ============================================================


class TestRecordAttempts:
    @pytest.mark.asyncio
    async def test_same_attempt_id_recorded_once(self, safety_factory) -> None:
        gate = await safety_factory()
        first = await gate.record_message_sent(
            CUSTOMER, "A1", "welcome", "Hello A", success=True, attempt_id="chk_1"
        )
        second = await gate.record_message_sent(
            CUSTOMER, "A1", "welcome", "Hello A", success=True, attempt_id="chk_1"
        )

        assert (first, second) == (True, False)
        assert (await gate.get_safety_status())["ledger"]["attempts"] == 1

    @pytest.mark.asyncio
    async def test_derived_attempt_id_is_deterministic(self, safety_factory) -> None:
        gate = await safety_factory()
        assert await gate.record_message_sent(CUSTOMER, "A1", "welcome", "Hello A", success=False)
        assert not await gate.record_message_sent(CUSTOMER, "A1", "welcome", "Hello A", success=False)

    @pytest.mark.asyncio
    async def test_resend_in_later_window_is_counted(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory()
        first = await gate.record_message_sent(
            CUSTOMER, "A1", "pickup_reminder", "Please pick up A1", success=True
        )
        clock.advance(2 * DAY)
        second = await gate.record_message_sent(
            CUSTOMER, "A1", "pickup_reminder", "Please pick up A1", success=True
        )

        assert (first, second) == (True, True)
        assert len(gate._ledger.successes(CUSTOMER, DAY)) == 1
        assert (await gate.get_safety_status())["ledger"]["successful"] == 2

    @pytest.mark.asyncio
    async def test_content_sample_is_normalized_and_truncated(self, safety_factory) -> None:
        gate = await safety_factory()
        await _sent(gate, "A1", "  HELLO   " + "x" * 600)

        entry = gate._ledger.entries[CUSTOMER][0]
        assert entry.content_sample.startswith("hello x")
        assert len(entry.content_sample) == 500

    @pytest.mark.asyncio
    async def test_invalid_customer_is_not_recorded(self, safety_factory) -> None:
        gate = await safety_factory()
        assert await gate.record_message_sent("12", "A1", "welcome", "Hello", success=True) is False

    @pytest.mark.asyncio
    async def test_ledger_is_persisted(self, safety_factory, backend, write_queue) -> None:
        gate = await safety_factory()
        await gate.record_message_sent(
            CUSTOMER, "A1", "welcome", "Hello A", success=True, attempt_id="chk_persist"
        )
        await write_queue.flush()

        doc = backend.load(DOC_SAFETY_LEDGER)
        assert doc[CUSTOMER][0]["attempt_id"] == "chk_persist"

        restarted = await safety_factory()
        assert restarted._ledger.has_attempt("chk_persist")

    @pytest.mark.asyncio
    async def test_cleanup_prunes_old_attempts(self, safety_factory, clock: FakeClock) -> None:
        gate = await safety_factory()
        await _sent(gate, "A1", "Hello A")
        clock.advance(7 * DAY + 1)

        assert gate._ledger.cleanup() == 1
        assert (await gate.get_safety_status())["ledger"]["customers"] == 0


# ============================================================
# Fail-closed e operação
# ============================================================


class TestFailClosed:
    @pytest.mark.asyncio
    async def test_unloaded_ledger_denies(self, backend, write_queue, clock) -> None:
        gate = SafetyGate(SafetyLedger(backend, write_queue, clock=clock), clock=clock)

        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")

        assert result.allowed is False
        assert result.reason == BlockReason.SAFETY_CHECK_ERROR
        assert result.category == GateCategory.ERROR

    @pytest.mark.asyncio
    async def test_backend_failure_denies(self, safety_factory, backend, monkeypatch) -> None:
        gate = await safety_factory()

        def broken(name: str):
            raise StateBackendError("backend offline")

        monkeypatch.setattr(backend, "load", broken)

        result = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")
        assert result.reason == BlockReason.SAFETY_CHECK_ERROR

    @pytest.mark.asyncio
    async def test_invalid_customer(self, safety_factory) -> None:
        gate = await safety_factory()
        result = await gate.can_send("abc", "A1", "welcome", "Hello A")
        assert result.reason == BlockReason.INVALID_CUSTOMER


class TestOperations:
    @pytest.mark.asyncio
    async def test_every_check_has_unique_id(self, safety_factory) -> None:
        gate = await safety_factory()
        a = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")
        b = await gate.can_send(CUSTOMER, "A1", "welcome", "Hello A")

        assert a.check_id.startswith("chk_")
        assert a.check_id != b.check_id

    @pytest.mark.asyncio
    async def test_status(self, safety_factory) -> None:
        gate = await safety_factory(hourly_limit=3, daily_limit=10, similarity_measure="sequence")
        await _sent(gate, "A1", "Hello A")

        status = await gate.get_safety_status()

        assert status["kill_switch_active"] is False
        assert status["limits"]["hourly"] == 3
        assert status["limits"]["similarity_measure"] == "sequence"
        assert status["ledger"] == {"customers": 1, "attempts": 1, "successful": 1}

    @pytest.mark.asyncio
    async def test_clear_keeps_kill_switch(self, safety_factory) -> None:
        gate = await safety_factory()
        await _sent(gate, "A1", "Hello A")
        await gate.activate_kill_switch("manter")

        gate.clear_all_data()

        status = await gate.get_safety_status()
        assert status["ledger"]["attempts"] == 0
        assert status["kill_switch_active"] is True
