"""Contexto de correlação para logs (correlation_id por despacho)."""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextvars import ContextVar

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Retorna o correlation_id corrente (ou vazio)."""

    return _correlation_id.get()


@contextlib.contextmanager
def bind_correlation_id(correlation_id: str) -> Generator[str, None, None]:
    """Associa um correlation_id ao contexto atual durante o bloco.

    O Dispatcher usa o check_id da verificação de segurança, de modo que
    todos os logs de uma mesma tentativa de envio compartilham o mesmo id.
    """
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)
