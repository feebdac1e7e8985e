"""Testes unitários para application/dispatcher.py (com FakeChannel)."""

from __future__ import annotations

import asyncio

import pytest

from dispatch_guard.application.atomic_state import lock_document_name
from dispatch_guard.application.factories.dispatcher_factory import build_dispatcher
from dispatch_guard.domain.enums import BlockReason, DispatchTag, ErrorKind, GateCategory
from dispatch_guard.domain.models import LockRecord

from conftest import CUSTOMER, FakeChannel, FakeClock, make_settings


class TestHappyPath:
    """Envio permitido e reenvio bloqueado."""

    @pytest.mark.asyncio
    async def test_send_then_identical_resend(self, dispatcher_factory, channel: FakeChannel) -> None:
        dispatcher = await dispatcher_factory()

        first = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")
        assert first.success is True
        assert first.tag == DispatchTag.SENT
        assert first.message_id == "wamid.1"
        assert first.check_id.startswith("chk_")

        second = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")
        assert second.success is False
        assert second.blocked is True
        assert second.blocked_by == "safety"
        assert second.tag == DispatchTag.BLOCKED_PRIMARY
        assert second.block_reason == BlockReason.EXACT_MESSAGE_DUPLICATE

        third = await dispatcher.send(CUSTOMER, "A1", "confirmation", "Order A1 confirmed")
        assert third.tag == DispatchTag.SENT
        assert channel.sent == [(CUSTOMER, "Hello A"), (CUSTOMER, "Order A1 confirmed")]

    @pytest.mark.asyncio
    async def test_customer_formats_share_the_same_key(self, dispatcher_factory) -> None:
        dispatcher = await dispatcher_factory()

        assert (await dispatcher.send("9876543210", "A1", "welcome", "Hello A")).success
        again = await dispatcher.send("+91 98765 43210", "A1", "welcome", "Hello A")
        assert again.blocked is True

    @pytest.mark.asyncio
    async def test_concurrent_identical_sends_deliver_once(
        self, dispatcher_factory, channel: FakeChannel
    ) -> None:
        dispatcher = await dispatcher_factory()

        results = await asyncio.gather(
            *(dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A") for _ in range(10))
        )

        assert sum(1 for r in results if r.success) == 1
        assert all(r.blocked for r in results if not r.success)
        assert channel.calls == 1

    @pytest.mark.asyncio
    async def test_result_as_dict(self, dispatcher_factory) -> None:
        dispatcher = await dispatcher_factory()
        result = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")

        data = result.to_dict()
        assert data["outcome"] == "sent"
        assert data["message_id"] == "wamid.1"
        assert data["blocked"] is False


class TestPolicyBlocks:
    @pytest.mark.asyncio
    async def test_daily_cap_blocks_sixth_order(self, dispatcher_factory, channel: FakeChannel) -> None:
        dispatcher = await dispatcher_factory(dedupe_daily_cap=5)

        results = [
            await dispatcher.send(CUSTOMER, f"O{i}", "welcome", f"Order O{i} received")
            for i in range(6)
        ]

        assert [r.success for r in results] == [True] * 5 + [False]
        sixth = results[-1]
        assert sixth.tag == DispatchTag.BLOCKED_SECONDARY
        assert sixth.blocked_by == "duplicate"
        assert sixth.block_reason == BlockReason.RATE_LIMIT
        assert sixth.block_category == GateCategory.RATE_LIMIT
        assert len(channel.sent) == 5

        stats = await dispatcher.get_statistics()
        assert stats["duplicate_gate"]["rate_limit_blocked"] == 1
        ledger = (await dispatcher.get_safety_status())["ledger"]
        assert ledger["attempts"] == 6
        assert ledger["successful"] == 5

    @pytest.mark.asyncio
    async def test_hierarchy_conflict_is_secondary_block(self, dispatcher_factory) -> None:
        dispatcher = await dispatcher_factory()
        await dispatcher.send(CUSTOMER, "A1", "ready", "Order A1 is ready")

        result = await dispatcher.send(CUSTOMER, "A1", "welcome", "Welcome to our shop")

        assert result.blocked_by == "duplicate"
        assert result.block_reason == BlockReason.MESSAGE_HIERARCHY_CONFLICT

    @pytest.mark.asyncio
    async def test_kill_switch(self, dispatcher_factory, channel: FakeChannel) -> None:
        dispatcher = await dispatcher_factory()
        await dispatcher.activate_kill_switch("investigando spam")

        blocked = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")
        assert blocked.tag == DispatchTag.BLOCKED_PRIMARY
        assert blocked.block_reason == BlockReason.KILL_SWITCH_ACTIVE
        assert (await dispatcher.get_safety_status())["kill_switch_active"] is True
        assert channel.calls == 0

        await dispatcher.deactivate_kill_switch()
        assert (await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")).success is True

    @pytest.mark.asyncio
    async def test_grace_period_after_start(self, dispatcher_factory, clock: FakeClock) -> None:
        dispatcher = await dispatcher_factory(safety_grace_period_seconds=240)

        blocked = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")
        assert blocked.block_reason == BlockReason.STARTUP_GRACE_PERIOD

        clock.advance(240)
        assert (await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")).success is True

    @pytest.mark.asyncio
    async def test_required_context_fields(self, dispatcher_factory, channel: FakeChannel) -> None:
        dispatcher = await dispatcher_factory(safety_require_context_fields=True)

        blocked = await dispatcher.send(
            CUSTOMER, "A1", "payment_reminder", "Balance 400 due", {"customer_name": "Ravi"}
        )
        assert blocked.tag == DispatchTag.BLOCKED_PRIMARY
        assert blocked.block_reason == BlockReason.MISSING_REQUIRED_FIELD
        assert channel.calls == 0

        sent = await dispatcher.send(
            CUSTOMER,
            "A1",
            "payment_reminder",
            "Balance 400 due",
            {"customer_name": "Ravi", "remaining_amount": 400},
        )
        assert sent.success is True

    @pytest.mark.asyncio
    async def test_pickup_reminder_limit_from_settings(
        self, dispatcher_factory, channel: FakeChannel, clock: FakeClock
    ) -> None:
        dispatcher = await dispatcher_factory(safety_max_pickup_reminders=1)
        assert (await dispatcher.send(CUSTOMER, "A1", "pickup_reminder", "Please pick up A1")).success

        clock.advance(86400 + 1)
        blocked = await dispatcher.send(CUSTOMER, "A1", "pickup_reminder", "Please pick up A1")

        assert blocked.tag == DispatchTag.BLOCKED_PRIMARY
        assert blocked.block_reason == BlockReason.REMINDER_LIMIT_EXCEEDED
        assert len(channel.sent) == 1


class TestChannelFailures:
    @pytest.mark.asyncio
    async def test_channel_failure_is_reported_and_retryable(
        self, dispatcher_factory, channel: FakeChannel
    ) -> None:
        dispatcher = await dispatcher_factory()
        channel.fail()

        failed = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")
        assert failed.success is False
        assert failed.blocked is False
        assert failed.tag == DispatchTag.FAILED
        assert failed.error_kind == ErrorKind.CHANNEL_FAILURE
        assert failed.outcome == "failed"

        channel.fail_with = None
        retried = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")
        assert retried.success is True

    @pytest.mark.asyncio
    async def test_open_circuit_skips_channel(self, dispatcher_factory, channel: FakeChannel) -> None:
        dispatcher = await dispatcher_factory(circuit_breaker_failure_threshold=2)
        channel.fail()

        await dispatcher.send(CUSTOMER, "O1", "welcome", "First notice")
        await dispatcher.send(CUSTOMER, "O2", "welcome", "Second notice")
        result = await dispatcher.send(CUSTOMER, "O3", "welcome", "Third notice")

        assert result.tag == DispatchTag.FAILED
        assert result.error_kind == ErrorKind.CIRCUIT_OPEN
        assert channel.calls == 2
        assert (await dispatcher.get_statistics())["circuit_breaker"]["state"] == "OPEN"

    @pytest.mark.asyncio
    async def test_circuit_recovers_after_timeout(
        self, dispatcher_factory, channel: FakeChannel, clock: FakeClock
    ) -> None:
        dispatcher = await dispatcher_factory(
            circuit_breaker_failure_threshold=1,
            circuit_breaker_recovery_timeout_seconds=60,
        )
        channel.fail()
        await dispatcher.send(CUSTOMER, "O1", "welcome", "First notice")

        channel.fail_with = None
        clock.advance(61)
        result = await dispatcher.send(CUSTOMER, "O1", "welcome", "First notice")

        assert result.success is True
        assert (await dispatcher.get_statistics())["circuit_breaker"]["state"] == "CLOSED"


class TestErrors:
    @pytest.mark.asyncio
    async def test_invalid_customer(self, dispatcher_factory, channel: FakeChannel) -> None:
        dispatcher = await dispatcher_factory()

        result = await dispatcher.send("123", "A1", "welcome", "Hello A")

        assert result.tag == DispatchTag.ERROR
        assert result.error_kind == ErrorKind.INVALID_CUSTOMER
        assert result.outcome == "error"
        assert channel.calls == 0

    @pytest.mark.asyncio
    async def test_lock_contention(
        self, dispatcher_factory, backend, channel: FakeChannel, clock: FakeClock
    ) -> None:
        dispatcher = await dispatcher_factory(lock_retry_attempts=2)
        resource = f"message:{CUSTOMER}:A1:welcome"
        foreign = LockRecord(
            resource_id=resource,
            lock_id="lock_other_process",
            acquired_at=clock.now,
            expires_at=clock.now + 30,
            holder_process_id=424242,
        )
        backend.save(lock_document_name(resource), foreign.model_dump(mode="json"))

        result = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")

        assert result.tag == DispatchTag.ERROR
        assert result.error_kind == ErrorKind.LOCK_CONTENTION
        assert channel.calls == 0


class TestBypassMode:
    @pytest.mark.asyncio
    async def test_bypass_skips_both_gates(self, dispatcher_factory, channel: FakeChannel) -> None:
        dispatcher = await dispatcher_factory(safety_enabled=False)
        await dispatcher.activate_kill_switch("ignorado em bypass")

        first = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")
        second = await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")

        assert first.tag == DispatchTag.BYPASSED
        assert second.tag == DispatchTag.BYPASSED
        assert first.check_id != second.check_id
        assert channel.calls == 2

    def test_bypass_rejected_in_production(self, backend, channel) -> None:
        settings = make_settings(safety_enabled=False, environment="production", state_backend="file")
        with pytest.raises(ValueError, match="SAFETY_ENABLED"):
            build_dispatcher(channel=channel, backend=backend, settings=settings)


class TestOperatorSurface:
    @pytest.mark.asyncio
    async def test_statistics(self, dispatcher_factory) -> None:
        dispatcher = await dispatcher_factory()
        await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")

        stats = await dispatcher.get_statistics()

        assert stats["duplicate_gate"]["total_messages_sent"] == 1
        assert stats["circuit_breaker"]["state"] == "CLOSED"
        assert stats["locks"]["total_locks"] == 0
        assert stats["safety_enabled"] is True
        assert stats["persistence"]["failed_writes"] == 0

    @pytest.mark.asyncio
    async def test_clear_all_data(self, dispatcher_factory) -> None:
        dispatcher = await dispatcher_factory()
        await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")

        await dispatcher.clear_all_data()

        assert (await dispatcher.send(CUSTOMER, "A1", "welcome", "Hello A")).success is True
