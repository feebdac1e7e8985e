"""Geradores de identificadores."""

from __future__ import annotations

import hashlib
import uuid


def new_check_id() -> str:
    """Gera o id de uma verificação de segurança (correlaciona a tentativa)."""

    return f"chk_{uuid.uuid4().hex}"


def new_lock_id() -> str:
    """Gera o id de posse de um lock."""

    return uuid.uuid4().hex


def derive_attempt_id(*parts: object) -> str:
    """Deriva id determinístico de tentativa a partir dos seus campos.

    Usado quando o chamador não informa check_id, para que o mesmo registro
    repetido não seja contado duas vezes.
    """

    raw = "|".join(str(p) for p in parts)
    return "att_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
