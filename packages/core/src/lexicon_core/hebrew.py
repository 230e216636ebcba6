"""
Hebrew diacritics (nikud and taamim).

Ranges removed:
- cantillation marks (taamim): U+0591..U+05AF
- vowel points (nikud): U+05B0..U+05BD
- U+05BF (rafe), U+05C1..U+05C2 (shin/sin dots), U+05C4..U+05C5 (upper/lower dots), U+05C7 (qamats qatan)

Maqaf (U+05BE), paseq (U+05C0) and sof pasuq (U+05C3) are punctuation and are kept.
"""

from __future__ import annotations

import re

_DIACRITICS_RE = re.compile("[\u0591-\u05BD\u05BF\u05C1\u05C2\u05C4\u05C5\u05C7]")


def strip_diacritics(text: str) -> str:
    return _DIACRITICS_RE.sub("", text)


def has_diacritics(text: str) -> bool:
    return _DIACRITICS_RE.search(text) is not None
