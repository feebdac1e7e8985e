"""StateBackend em Memória (desenvolvimento e testes).

Responsabilidades:
- Implementar StateBackend usando dict em memória
- Isolar chamadores via cópia profunda (round-trip JSON)
- ⚠️ Não usar em produção (proibido em staging/production)
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any

from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.observability.logging import get_logger

logger: logging.Logger = get_logger(__name__)


class InMemoryStateBackend(StateBackend):
    """Backend em memória. Dados são perdidos ao reiniciar.

    Os documentos são guardados já serializados, de modo que o comportamento
    (inclusive erros de serialização) é o mesmo dos backends duráveis.
    """

    def __init__(self) -> None:
        self._docs: dict[str, str] = {}
        self._lock = threading.Lock()

    def load(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            raw = self._docs.get(name)
        return json.loads(raw) if raw is not None else None

    def save(self, name: str, document: dict[str, Any]) -> None:
        raw = json.dumps(document)
        with self._lock:
            self._docs[name] = raw

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._docs.pop(name, None) is not None

    def create_exclusive(self, name: str, document: dict[str, Any]) -> bool:
        raw = json.dumps(document)
        with self._lock:
            if name in self._docs:
                return False
            self._docs[name] = raw
        logger.debug("Exclusive document created (in-memory)", extra={"doc": name})
        return True

    def list_names(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(n for n in self._docs if n.startswith(prefix))
