"""Logging estruturado em JSON para o núcleo de despacho.

Cada linha carrega `service`, `version` e o `correlation_id` da tentativa de
envio corrente. Conteúdo de mensagens, tokens e telefones completos nunca
devem aparecer nos logs (use `mask_customer_id`).
"""

from __future__ import annotations

import logging
import sys
from typing import IO

from pythonjsonlogger.json import JsonFormatter

from dispatch_guard.observability.context import get_correlation_id

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(correlation_id)s %(service)s"

# Bibliotecas que logam URLs completas (com phone_number_id) em INFO.
_NOISY_LOGGERS = ("httpx", "httpcore")


class CorrelationIdFilter(logging.Filter):
    """Anexa service, version e correlation_id a cada record."""

    def __init__(self, service_name: str, version: str | None = None) -> None:
        super().__init__()
        self._service_name = service_name
        self._version = version

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        # `extra={"correlation_id": ...}` explícito tem precedência sobre o contexto.
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        record.service = self._service_name
        if self._version:
            record.version = self._version
        return True


def configure_logging(
    level: str,
    service_name: str,
    version: str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Instala um único handler JSON no root logger."""
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        JsonFormatter(LOG_FORMAT, rename_fields={"levelname": "level", "name": "logger"})
    )
    handler.addFilter(CorrelationIdFilter(service_name, version))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def mask_customer_id(customer_id: str | None) -> str:
    """Mantém só os 4 últimos dígitos: "919876543210" -> "********3210"."""
    if not customer_id:
        return "<none>"
    return "*" * max(len(customer_id) - 4, 0) + customer_id[-4:]


def log_fallback(
    logger: logging.Logger,
    component: str,
    reason: str | None = None,
    elapsed_ms: float | None = None,
) -> None:
    """Registra em INFO que um componente seguiu pelo caminho degradado.

    Usado quando um gate falha aberto ou um documento ilegível é tratado como
    vazio. `reason` é um código curto (ex.: "load_error:sent-messages").
    """
    extra: dict[str, object] = {"fallback_used": True, "component": component}
    if reason:
        extra["reason"] = reason
    if elapsed_ms is not None:
        extra["elapsed_ms"] = elapsed_ms
    logger.info("Fallback applied for %s", component, extra=extra)
