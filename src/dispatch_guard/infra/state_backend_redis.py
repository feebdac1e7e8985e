"""StateBackend em Redis (produção multi-réplica).

Responsabilidades:
- Documentos JSON em chaves `dispatch_guard:<nome>`
- SET NX para criação exclusiva (locks)
- Fail-closed: erros do Redis viram StateBackendError
"""

from __future__ import annotations

import json
import logging
from typing import Any

from dispatch_guard.domain.errors import StateBackendError
from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.observability.logging import get_logger

logger: logging.Logger = get_logger(__name__)


class RedisStateBackend(StateBackend):
    """Backend Redis com cliente injetado.

    Estrutura Redis:
        KEY: dispatch_guard:{nome}
        VALUE: documento JSON
    """

    def __init__(self, redis_client: Any, key_prefix: str = "dispatch_guard:") -> None:
        self._redis = redis_client
        self._prefix = key_prefix

    def _key(self, name: str) -> str:
        return f"{self._prefix}{name}"

    @staticmethod
    def _decode(raw: Any) -> str:
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    def load(self, name: str) -> dict[str, Any] | None:
        try:
            raw = self._redis.get(self._key(name))
        except Exception as e:
            logger.error("Redis state load failed", extra={"doc": name, "error": str(e)})
            raise StateBackendError(f"Redis unavailable: {e}") from e
        if not raw:
            return None
        try:
            return json.loads(self._decode(raw))
        except json.JSONDecodeError as e:
            raise StateBackendError(f"Corrupted document {name}: {e}") from e

    def save(self, name: str, document: dict[str, Any]) -> None:
        try:
            self._redis.set(self._key(name), json.dumps(document))
        except Exception as e:
            logger.error("Redis state save failed", extra={"doc": name, "error": str(e)})
            raise StateBackendError(f"Redis unavailable: {e}") from e

    def delete(self, name: str) -> bool:
        try:
            return bool(self._redis.delete(self._key(name)))
        except Exception as e:
            raise StateBackendError(f"Redis unavailable: {e}") from e

    def create_exclusive(self, name: str, document: dict[str, Any]) -> bool:
        try:
            was_set = self._redis.set(self._key(name), json.dumps(document), nx=True)
        except Exception as e:
            logger.error(
                "Redis exclusive create failed (fail-closed)",
                extra={"doc": name, "error": str(e)},
            )
            raise StateBackendError(f"Redis unavailable: {e}") from e
        return bool(was_set)

    def list_names(self, prefix: str = "") -> list[str]:
        try:
            keys = self._redis.scan_iter(match=f"{self._prefix}{prefix}*")
            return sorted(self._decode(k)[len(self._prefix) :] for k in keys)
        except Exception as e:
            raise StateBackendError(f"Redis unavailable: {e}") from e
