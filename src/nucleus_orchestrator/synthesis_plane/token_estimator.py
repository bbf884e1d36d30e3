"""Heuristic prompt token estimation for Nucleus budget enforcement."""

from __future__ import annotations

import math
import re
from typing import Final

_PROSE_CHARS_PER_TOKEN: Final[float] = 4.0
_CODE_CHARS_PER_TOKEN: Final[float] = 3.0
_SYMBOL_DENSITY_THRESHOLD: Final[float] = 0.12
_LONG_TEXT_CHARS: Final[int] = 4000
_LONG_TEXT_PADDING: Final[float] = 1.10
_SHORT_TEXT_PADDING: Final[float] = 1.05

_CODE_SYMBOLS: Final[frozenset[str]] = frozenset("{}[]()<>;:=+-*/\\|&!#$%^~`\"'@,.")
_CODE_MARKERS: Final[re.Pattern[str]] = re.compile(
    r"(?:\bdef |\bclass |\bfunction\b|\bconst |\blet |\breturn\b|\bimport |=>|::|\{\s*\"|```)"
)


def estimate_tokens(text: str | None) -> int:
    """
    Estimate the token count of ``text`` without a tokenizer.

    Prose is measured at about four characters per token. Symbol-dense or
    code-like text drops to about three, and the result carries a small
    padding so the estimate errs high.
    """

    if not text:
        return 0

    length = len(text)
    symbol_count = sum(1 for char in text if char in _CODE_SYMBOLS)
    code_like = (symbol_count / length) > _SYMBOL_DENSITY_THRESHOLD or bool(
        _CODE_MARKERS.search(text)
    )
    ratio = _CODE_CHARS_PER_TOKEN if code_like else _PROSE_CHARS_PER_TOKEN
    padding = _LONG_TEXT_PADDING if length > _LONG_TEXT_CHARS else _SHORT_TEXT_PADDING
    return math.ceil((length / ratio) * padding)


__all__ = ["estimate_tokens"]
