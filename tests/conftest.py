from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from dispatch_guard.application.factories.dispatcher_factory import build_dispatcher
from dispatch_guard.config.settings import Settings, get_settings
from dispatch_guard.domain.errors import ChannelSendError
from dispatch_guard.domain.protocols.channel import MessageChannel
from dispatch_guard.domain.results import ChannelReceipt
from dispatch_guard.infra.state_backend_memory import InMemoryStateBackend
from dispatch_guard.infra.write_queue import WriteQueue

CUSTOMER = "919876543210"
START_TIME = 1_760_000_000.0


class FakeClock:
    """Relógio controlável (epoch seconds)."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChannel(MessageChannel):
    """Canal em memória que registra envios e pode simular falhas."""

    name = "fake"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None
        self.calls = 0

    async def send_raw(self, destination_id: str, content: str) -> ChannelReceipt:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((destination_id, content))
        return ChannelReceipt(message_id=f"wamid.{len(self.sent)}")

    def fail(self, message: str = "upstream 503") -> None:
        self.fail_with = ChannelSendError(message, status_code=503)


def make_settings(**overrides: Any) -> Settings:
    """Settings de teste: memória, sem carência e sem cooldown."""
    values: dict[str, Any] = {
        "state_backend": "memory",
        "safety_grace_period_seconds": 0,
        "dedupe_cooldown_seconds": 0,
        "safety_hourly_limit": 10,
        "safety_daily_limit": 20,
        "safety_similarity_threshold": 0.99,
        "lock_retry_delay_seconds": 0,
        "write_queue_retry_delay_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> InMemoryStateBackend:
    return InMemoryStateBackend()


@pytest.fixture
def write_queue(backend: InMemoryStateBackend) -> WriteQueue:
    return WriteQueue(backend, max_retries=1, retry_delay_seconds=0)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest_asyncio.fixture
async def dispatcher_factory(backend, channel, clock):
    """Constrói dispatchers iniciados; encerra todos ao final do teste."""
    created = []

    async def _build(**overrides: Any):
        dispatcher = build_dispatcher(
            channel=channel,
            backend=backend,
            settings=make_settings(**overrides),
            clock=clock,
        )
        await dispatcher.start()
        created.append(dispatcher)
        return dispatcher

    yield _build
    for dispatcher in created:
        await dispatcher.shutdown()
