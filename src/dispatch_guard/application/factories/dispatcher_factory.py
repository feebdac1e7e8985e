"""Factory para construção do Dispatcher.

Responsabilidades:
- Conhecer infra e settings
- Construir stores, gates, breaker e coordenador com a mesma fonte de tempo
- Retornar uma instância de `Dispatcher` (start() fica com o chamador)

Não conter lógica de negócio.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace

from dispatch_guard.application.atomic_state import AtomicStateCoordinator
from dispatch_guard.application.dedupe_index import DedupeIndex
from dispatch_guard.application.dispatcher import Dispatcher
from dispatch_guard.application.duplicate_gate import DuplicatePreventionGate
from dispatch_guard.application.safety_gate import SafetyGate
from dispatch_guard.application.safety_ledger import SafetyLedger
from dispatch_guard.config.settings import Settings, get_settings
from dispatch_guard.domain.message_rules import DEFAULT_MESSAGE_RULES, BusinessHours, MessageRule
from dispatch_guard.domain.protocols.channel import MessageChannel
from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.infra.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from dispatch_guard.infra.write_queue import WriteQueue
from dispatch_guard.observability.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _message_rules(settings: Settings) -> dict[str, MessageRule]:
    rules = dict(DEFAULT_MESSAGE_RULES)
    rules["pickup_reminder"] = replace(
        rules["pickup_reminder"], max_sends=settings.safety_max_pickup_reminders
    )
    rules["payment_reminder"] = replace(
        rules["payment_reminder"], max_sends=settings.safety_max_payment_reminders
    )
    return rules


def _business_hours(settings: Settings) -> BusinessHours | None:
    if not settings.safety_business_hours_enabled:
        return None
    return BusinessHours(
        start_hour=settings.safety_business_hours_start,
        end_hour=settings.safety_business_hours_end,
        utc_offset_minutes=settings.safety_business_hours_utc_offset_minutes,
    )


def build_dispatcher(
    *,
    channel: MessageChannel | None = None,
    backend: StateBackend | None = None,
    settings: Settings | None = None,
    clock: Callable[[], float] | None = None,
) -> Dispatcher:
    """Constrói e retorna `Dispatcher` usando infra/settings.

    Parâmetros explícitos têm prioridade; quando ausentes, o backend vem de
    `state_backend` e o canal é o WhatsApp Cloud configurado nas settings.
    """
    settings = settings or get_settings()

    config_errors = settings.validate_all()
    if config_errors:
        raise ValueError("Invalid configuration: " + "; ".join(config_errors))

    if backend is None:
        from dispatch_guard.infra.state_backend_factory import create_state_backend_from_settings

        backend = create_state_backend_from_settings(settings)
        logger.debug("factory: created state backend", extra={"backend": settings.state_backend})

    if channel is None:
        from dispatch_guard.adapters.whatsapp.channel import WhatsAppCloudChannel

        channel = WhatsAppCloudChannel.from_settings(settings)

    write_queue = WriteQueue(
        backend,
        max_retries=settings.write_queue_max_retries,
        retry_delay_seconds=settings.write_queue_retry_delay_seconds,
    )

    index = DedupeIndex(
        backend,
        write_queue,
        window_seconds=settings.dedupe_window_seconds,
        cleanup_interval_seconds=settings.dedupe_cleanup_interval_seconds,
        sync_interval_seconds=settings.state_sync_interval_seconds,
        clock=clock,
    )
    duplicate_gate = DuplicatePreventionGate(
        index,
        daily_cap=settings.dedupe_daily_cap,
        cooldown_seconds=settings.dedupe_cooldown_seconds,
        default_country_code=settings.default_country_code,
        developer_customer_ids=settings.developer_customer_ids,
    )

    ledger = SafetyLedger(
        backend,
        write_queue,
        window_seconds=settings.dedupe_window_seconds,
        cleanup_interval_seconds=settings.dedupe_cleanup_interval_seconds,
        sync_interval_seconds=settings.state_sync_interval_seconds,
        clock=clock,
    )
    safety_gate = SafetyGate(
        ledger,
        hourly_limit=settings.safety_hourly_limit,
        daily_limit=settings.safety_daily_limit,
        grace_period_seconds=settings.safety_grace_period_seconds,
        similarity_threshold=settings.safety_similarity_threshold,
        similarity_sample_size=settings.safety_similarity_sample_size,
        similarity_measure=settings.safety_similarity_measure,
        kill_switch_override=settings.whatsapp_kill_switch,
        default_country_code=settings.default_country_code,
        message_rules=_message_rules(settings),
        require_context_fields=settings.safety_require_context_fields,
        business_hours=_business_hours(settings),
        clock=clock,
    )

    breaker = CircuitBreaker(
        CircuitBreakerConfig(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout_seconds=settings.circuit_breaker_recovery_timeout_seconds,
        ),
        clock=clock,
        name=channel.name,
    )

    coordinator = AtomicStateCoordinator(
        backend,
        lock_timeout_seconds=settings.lock_timeout_seconds,
        retry_attempts=settings.lock_retry_attempts,
        retry_delay_seconds=settings.lock_retry_delay_seconds,
        sweep_interval_seconds=settings.lock_sweep_interval_seconds,
        clock=clock,
    )

    if not settings.safety_enabled:
        logger.warning("factory: safety gate disabled (bypass mode)")

    return Dispatcher(
        safety_gate=safety_gate,
        duplicate_gate=duplicate_gate,
        circuit_breaker=breaker,
        channel=channel,
        coordinator=coordinator,
        write_queue=write_queue,
        safety_enabled=settings.safety_enabled,
        default_country_code=settings.default_country_code,
    )


async def start_dispatcher(
    *,
    channel: MessageChannel | None = None,
    backend: StateBackend | None = None,
    settings: Settings | None = None,
) -> Dispatcher:
    """Configura logging, constrói e inicia o Dispatcher (uso em processos reais)."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.service_name, settings.version)
    dispatcher = build_dispatcher(channel=channel, backend=backend, settings=settings)
    await dispatcher.start()
    return dispatcher
