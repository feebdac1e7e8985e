"""Medidas de similaridade de texto usadas pelo gate de segurança.

Notificações do mesmo tipo variam apenas em horários e datas; esses trechos
são mascarados antes da comparação para que "pronto às 10:30" e
"pronto às 11:45" sejam tratados como a mesma mensagem.
"""

from __future__ import annotations

import difflib
import re
from collections.abc import Callable

from dispatch_guard.domain.hashing import normalize_content

_CLOCK_TIME = re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?\s*(?:am|pm)?\b")
_DATE = re.compile(r"\b\d{1,4}[/.-]\d{1,2}[/.-]\d{1,4}\b")
_TOKEN = re.compile(r"\w+")

SimilarityMeasure = Callable[[str, str], float]


def mask_volatile(text: str) -> str:
    """Normaliza e substitui horários/datas por marcadores fixos."""
    masked = normalize_content(text)
    masked = _DATE.sub("<date>", masked)
    return _CLOCK_TIME.sub("<time>", masked)


def _tokens(text: str) -> set[str]:
    return set(_TOKEN.findall(mask_volatile(text)))


def jaccard_similarity(a: str, b: str) -> float:
    """Similaridade de Jaccard entre conjuntos de tokens (0.0 a 1.0)."""
    set_a = _tokens(a)
    set_b = _tokens(b)
    if not set_a and not set_b:
        return 1.0
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def sequence_similarity(a: str, b: str) -> float:
    """Razão do difflib.SequenceMatcher sobre o texto mascarado."""
    return difflib.SequenceMatcher(None, mask_volatile(a), mask_volatile(b)).ratio()


_MEASURES: dict[str, SimilarityMeasure] = {
    "jaccard": jaccard_similarity,
    "sequence": sequence_similarity,
}


def get_similarity_measure(name: str) -> SimilarityMeasure:
    """Resolve a medida pelo nome configurado.

    Raises:
        ValueError: se o nome não for conhecido
    """
    try:
        return _MEASURES[name.lower()]
    except KeyError:
        msg = f"Unknown similarity measure: {name}"
        raise ValueError(msg) from None
