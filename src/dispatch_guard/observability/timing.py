"""Instrumentação de latência por componente."""

from __future__ import annotations

import contextlib
import time
from collections.abc import Generator
from typing import Any

from dispatch_guard.observability.logging import get_logger

logger = get_logger(__name__)


@contextlib.contextmanager
def timed(component: str, **fields: Any) -> Generator[dict[str, Any], None, None]:
    """Mede o tempo do bloco e registra um log estruturado ao final.

    O dicionário entregue ao bloco pode ser enriquecido (ex.: outcome) e é
    anexado ao log. Exceções do bloco são registradas como outcome=error e
    propagadas sem alteração.

    Uso:
        with timed("channel_send", channel="whatsapp") as span:
            receipt = await channel.send_raw(...)
            span["outcome"] = "sent"
    """
    span: dict[str, Any] = dict(fields)
    start = time.perf_counter()
    try:
        yield span
    except BaseException:
        span.setdefault("outcome", "error")
        raise
    finally:
        span["component"] = component
        span["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        logger.info("component_latency", extra=span)
