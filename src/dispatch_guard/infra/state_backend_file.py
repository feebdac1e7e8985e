"""StateBackend em arquivos JSON (backend padrão).

Responsabilidades:
- Um arquivo `<nome>.json` por documento no diretório de estado
- Substituição atômica em save() (arquivo temporário + os.replace)
- Criação exclusiva com O_CREAT | O_EXCL (locks)
- Converter falhas de I/O em StateBackendError
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from dispatch_guard.domain.errors import StateBackendError
from dispatch_guard.domain.protocols.state_backend import StateBackend
from dispatch_guard.observability.logging import get_logger

logger: logging.Logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_SUFFIX = ".json"


def _sanitize(name: str) -> str:
    """Nome de documento -> nome de arquivo seguro (sem separadores de caminho)."""
    return _UNSAFE_CHARS.sub("_", name)


class FileStateBackend(StateBackend):
    """Documentos JSON legíveis e editáveis à mão.

    Estrutura:
        {state_dir}/sent-messages.json
        {state_dir}/lock-message_919876543210_A1_ready.json
    """

    def __init__(self, state_dir: str | Path) -> None:
        self._dir = Path(state_dir)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateBackendError(f"Cannot create state dir {self._dir}: {e}") from e

    @property
    def state_dir(self) -> Path:
        return self._dir

    def _path(self, name: str) -> Path:
        return self._dir / f"{_sanitize(name)}{_SUFFIX}"

    def load(self, name: str) -> dict[str, Any] | None:
        path = self._path(name)
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.error(
                "State document load failed",
                extra={"doc": name, "error": type(e).__name__},
            )
            raise StateBackendError(f"Cannot load {name}: {e}") from e

    def save(self, name: str, document: dict[str, Any]) -> None:
        path = self._path(name)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        try:
            with tmp.open("w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as e:
            tmp.unlink(missing_ok=True)
            raise StateBackendError(f"Cannot save {name}: {e}") from e

    def delete(self, name: str) -> bool:
        try:
            self._path(name).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateBackendError(f"Cannot delete {name}: {e}") from e

    def create_exclusive(self, name: str, document: dict[str, Any]) -> bool:
        path = self._path(name)
        try:
            payload = json.dumps(document, indent=2, sort_keys=True)
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except (OSError, TypeError, ValueError) as e:
            raise StateBackendError(f"Cannot create {name}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise StateBackendError(f"Cannot write {name}: {e}") from e
        return True

    def list_names(self, prefix: str = "") -> list[str]:
        safe_prefix = _sanitize(prefix)
        try:
            return sorted(
                p.name[: -len(_SUFFIX)]
                for p in self._dir.glob(f"*{_SUFFIX}")
                if not p.name.startswith(".") and p.name.startswith(safe_prefix)
            )
        except OSError as e:
            raise StateBackendError(f"Cannot list {self._dir}: {e}") from e
