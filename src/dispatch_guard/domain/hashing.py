"""Hashing e normalização de identificadores de despacho.

Responsabilidades:
- Normalizar telefone do cliente (somente dígitos, 10 a 15, prefixo do país)
- Gerar DispatchKey determinística (sha256 do array JSON cliente/pedido/tipo/segmento)
- Gerar fingerprint curta de conteúdo (16 hex de sha256 do texto normalizado)
- Hierarquia de tipos de mensagem (progressão do pedido)
"""

from __future__ import annotations

import hashlib
import json
import re

from dispatch_guard.domain.errors import InvalidCustomerError

_NON_DIGITS = re.compile(r"\D+")
_WHITESPACE = re.compile(r"\s+")

MIN_CUSTOMER_DIGITS = 10
MAX_CUSTOMER_DIGITS = 15
FINGERPRINT_LENGTH = 16

# Ordem de progressão do pedido. Tipos fora do mapa não são comparáveis.
MESSAGE_HIERARCHY: dict[str, int] = {
    "welcome": 1,
    "confirmation": 2,
    "ready": 3,
    "pickup_reminder": 4,
    "delivered": 5,
    "delivery": 5,
    "delivery_notification": 5,
    "payment_reminder": 6,
}


def normalize_customer_id(raw: str | int | None, default_country_code: str = "91") -> str:
    """Normaliza telefone do cliente para a forma canônica (somente dígitos).

    Regras:
    - 10 dígitos: prefixa o código do país
    - 11 dígitos iniciando com 0: remove o 0 e prefixa o código do país
    - demais tamanhos válidos (10 a 15): mantém os dígitos

    Raises:
        InvalidCustomerError: se restarem menos de 10 ou mais de 15 dígitos
    """
    digits = _NON_DIGITS.sub("", str(raw or ""))
    if not MIN_CUSTOMER_DIGITS <= len(digits) <= MAX_CUSTOMER_DIGITS:
        raise InvalidCustomerError(
            f"customer id must have {MIN_CUSTOMER_DIGITS}-{MAX_CUSTOMER_DIGITS} digits, "
            f"got {len(digits)}"
        )

    if len(digits) == 10:
        return f"{default_country_code}{digits}"
    if len(digits) == 11 and digits.startswith("0"):
        return f"{default_country_code}{digits[1:]}"
    return digits


def make_dispatch_key(
    customer_id: str,
    order_id: str,
    message_type: str,
    channel_segment: str = "default",
) -> str:
    """Gera DispatchKey (hex sha256) para o evento lógico de notificação.

    Os campos são serializados como array JSON compacto, então separadores
    dentro de order_id ou segmento não colidem com outra tupla.
    """
    raw = json.dumps(
        [customer_id, order_id, message_type, channel_segment],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_content(text: str | None) -> str:
    """Minúsculas, sem bordas e com espaços colapsados."""
    return _WHITESPACE.sub(" ", (text or "").strip().lower())


def content_fingerprint(text: str | None) -> str:
    """Fingerprint de conteúdo: primeiros 16 hex do sha256 do texto normalizado."""
    digest = hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def is_reminder_type(message_type: str) -> bool:
    """Lembretes podem ser reenviados depois que a janela expira."""
    return "reminder" in message_type.lower()


def hierarchy_level(message_type: str) -> int | None:
    """Nível do tipo na progressão do pedido (None = não comparável)."""
    return MESSAGE_HIERARCHY.get(message_type.lower())
