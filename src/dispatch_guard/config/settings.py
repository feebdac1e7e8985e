"""Configurações da aplicação via variáveis de ambiente.

Todas as configurações são carregadas de env vars (ou arquivo .env).
Nunca hardcode tokens ou valores sensíveis.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# -----------------------------------------------------------------------------
# Constantes de API Meta/WhatsApp
# Referência: https://developers.facebook.com/docs/graph-api/changelog
# -----------------------------------------------------------------------------
GRAPH_API_VERSION: str = "v24.0"
GRAPH_API_BASE_URL: str = "https://graph.facebook.com"

VALID_STATE_BACKENDS = frozenset({"memory", "file", "redis"})
VALID_SIMILARITY_MEASURES = frozenset({"jaccard", "sequence"})


class Settings(BaseSettings):
    """Configurações lidas do ambiente.

    Comentários em PT-BR são obrigatórios por diretriz do projeto.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    # Aplicação
    service_name: str = "dispatch_guard"
    version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"

    # Estado durável
    state_backend: str = "file"  # memory | file | redis
    state_dir: str = "./data/dispatch-guard"  # Diretório dos documentos JSON
    redis_url: str | None = None  # Para state_backend=redis
    redis_key_prefix: str = "dispatch_guard:"
    state_sync_interval_seconds: float = 30.0  # Snapshot periódico dos índices
    write_queue_max_retries: int = 3  # Tentativas por documento antes de desistir
    write_queue_retry_delay_seconds: float = 0.5

    # Normalização de clientes
    default_country_code: str = "91"  # Prefixo aplicado a números de 10 dígitos
    developer_customer_ids: list[str] = Field(default_factory=list)  # Ignoram dedupe

    # Gate de deduplicação (primeira camada, fail-open)
    dedupe_window_seconds: float = 86400.0  # Janela de duplicidade (24h)
    dedupe_daily_cap: int = 5  # Máximo de mensagens por cliente na janela
    dedupe_cooldown_seconds: float = 300.0  # Intervalo mínimo entre mensagens
    dedupe_cleanup_interval_seconds: float = 3600.0  # Poda dos índices

    # Gate de segurança (segunda camada, fail-closed)
    safety_enabled: bool = True  # False = bypass explícito (testes/emergência)
    safety_grace_period_seconds: float = 240.0  # Bloqueio após restart (4 min)
    safety_daily_limit: int = 10
    safety_hourly_limit: int = 3
    safety_similarity_threshold: float = 0.8
    safety_similarity_sample_size: int = 5  # Últimas N mensagens comparadas
    safety_similarity_measure: str = "jaccard"  # jaccard | sequence
    safety_require_context_fields: bool = False  # Exige campos do contexto por tipo
    safety_max_pickup_reminders: int = 3  # Envios bem sucedidos por pedido
    safety_max_payment_reminders: int = 5
    safety_business_hours_enabled: bool = False
    safety_business_hours_start: int = 9  # Hora local inclusiva
    safety_business_hours_end: int = 20  # Hora local exclusiva
    safety_business_hours_utc_offset_minutes: int = 330  # IST
    whatsapp_kill_switch: bool = False  # WHATSAPP_KILL_SWITCH=true bloqueia tudo

    # Circuit breaker do canal
    circuit_breaker_failure_threshold: int = 5  # Falhas consecutivas antes de abrir
    circuit_breaker_recovery_timeout_seconds: float = 60.0  # Tempo até half-open

    # Coordenador de estado atômico
    lock_timeout_seconds: float = 30.0  # TTL do lock (envio + bookkeeping)
    lock_retry_attempts: int = 3
    lock_retry_delay_seconds: float = 1.0  # Backoff linear (delay * tentativa)
    lock_sweep_interval_seconds: float = 60.0

    # WhatsApp / Meta API
    whatsapp_access_token: str | None = None  # Bearer token
    whatsapp_phone_number_id: str | None = None  # ID do número registrado
    whatsapp_api_version: str = GRAPH_API_VERSION
    whatsapp_api_base_url: str = GRAPH_API_BASE_URL
    whatsapp_request_timeout_seconds: float = 30.0

    @property
    def is_production(self) -> bool:
        """Retorna True se ambiente é produção."""
        return self.environment.lower() in ("production", "prod")

    @property
    def is_staging(self) -> bool:
        """Retorna True se ambiente é staging."""
        return self.environment.lower() in ("staging", "stage")

    @property
    def is_development(self) -> bool:
        """Retorna True se ambiente é desenvolvimento."""
        return self.environment.lower() in ("development", "dev", "local")

    def get_messages_endpoint(self, phone_number_id: str | None = None) -> str:
        """Retorna URL completa para envio de mensagens.

        Formato: https://graph.facebook.com/v24.0/{phone_number_id}/messages
        """
        pid = phone_number_id or self.whatsapp_phone_number_id
        if not pid:
            raise ValueError("phone_number_id é obrigatório")
        return f"{self.whatsapp_api_base_url}/{self.whatsapp_api_version}/{pid}/messages"

    def validate_state_backend(self) -> list[str]:
        """Valida backend de estado durável.

        Em staging/prod, memory é proibido: o estado precisa sobreviver a restarts.
        """
        errors: list[str] = []
        backend = self.state_backend.lower()

        if backend not in VALID_STATE_BACKENDS:
            errors.append(
                f"STATE_BACKEND '{backend}' inválido. "
                f"Valores válidos: {sorted(VALID_STATE_BACKENDS)}"
            )

        if backend == "memory" and (self.is_staging or self.is_production):
            errors.append(
                "STATE_BACKEND=memory é proibido em staging/production. "
                "Use 'file' ou 'redis' para sobreviver a restarts."
            )

        if backend == "redis" and not self.redis_url:
            errors.append("STATE_BACKEND=redis requer REDIS_URL configurado")

        if backend == "file" and not self.state_dir:
            errors.append("STATE_BACKEND=file requer STATE_DIR configurado")

        return errors

    def validate_dedupe_limits(self) -> list[str]:
        """Valida janela, limite diário e cooldown do gate de deduplicação."""
        errors: list[str] = []
        if self.dedupe_window_seconds <= 0:
            errors.append("DEDUPE_WINDOW_SECONDS deve ser > 0")
        if self.dedupe_daily_cap < 1:
            errors.append("DEDUPE_DAILY_CAP deve ser >= 1")
        if self.dedupe_cooldown_seconds < 0:
            errors.append("DEDUPE_COOLDOWN_SECONDS não pode ser negativo")
        if self.dedupe_cooldown_seconds >= self.dedupe_window_seconds > 0:
            errors.append("DEDUPE_COOLDOWN_SECONDS deve ser menor que a janela")
        return errors

    def validate_safety_limits(self) -> list[str]:
        """Valida limites absolutos e similaridade do gate de segurança."""
        errors: list[str] = []
        if self.safety_hourly_limit < 1 or self.safety_daily_limit < 1:
            errors.append("SAFETY_HOURLY_LIMIT e SAFETY_DAILY_LIMIT devem ser >= 1")
        if self.safety_hourly_limit > self.safety_daily_limit:
            errors.append("SAFETY_HOURLY_LIMIT não pode exceder SAFETY_DAILY_LIMIT")
        if not 0 < self.safety_similarity_threshold <= 1:
            errors.append("SAFETY_SIMILARITY_THRESHOLD deve estar entre 0 e 1")
        if self.safety_similarity_measure.lower() not in VALID_SIMILARITY_MEASURES:
            errors.append("SAFETY_SIMILARITY_MEASURE inválido: use jaccard | sequence")
        if self.safety_grace_period_seconds < 0:
            errors.append("SAFETY_GRACE_PERIOD_SECONDS não pode ser negativo")
        if self.safety_max_pickup_reminders < 1 or self.safety_max_payment_reminders < 1:
            errors.append("SAFETY_MAX_*_REMINDERS devem ser >= 1")
        if not 0 <= self.safety_business_hours_start < self.safety_business_hours_end <= 24:
            errors.append("SAFETY_BUSINESS_HOURS_START/END inválidos (0 <= start < end <= 24)")
        if not self.safety_enabled and (self.is_staging or self.is_production):
            errors.append("SAFETY_ENABLED=false é proibido em staging/production")
        return errors

    def validate_lock_config(self) -> list[str]:
        """Valida parâmetros do coordenador de locks."""
        errors: list[str] = []
        if self.lock_timeout_seconds <= 0:
            errors.append("LOCK_TIMEOUT_SECONDS deve ser > 0")
        if self.lock_retry_attempts < 1:
            errors.append("LOCK_RETRY_ATTEMPTS deve ser >= 1")
        if self.lock_retry_delay_seconds < 0:
            errors.append("LOCK_RETRY_DELAY_SECONDS não pode ser negativo")
        return errors

    def validate_whatsapp_config(self) -> list[str]:
        """Valida se configurações mínimas de WhatsApp estão presentes.

        Retorna lista de erros (vazia = tudo OK).
        """
        errors: list[str] = []
        if not self.whatsapp_phone_number_id:
            errors.append("WHATSAPP_PHONE_NUMBER_ID não configurado")
        if not self.whatsapp_access_token:
            errors.append("WHATSAPP_ACCESS_TOKEN não configurado")
        return errors

    def validate_all(self) -> list[str]:
        """Agrega todas as validações do núcleo de despacho (sem WhatsApp)."""
        return [
            *self.validate_state_backend(),
            *self.validate_dedupe_limits(),
            *self.validate_safety_limits(),
            *self.validate_lock_config(),
        ]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Retorna uma instância cacheada de Settings.

    A cache garante que mesmo múltiplas injeções não criam novos objetos.
    """
    return Settings()
