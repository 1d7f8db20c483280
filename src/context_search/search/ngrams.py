"""
Character n-grams for languages written without spaces between words.
"""

from __future__ import annotations

import unicodedata

MAX_GRAMS = 8
GRAM_SIZES = (4, 3, 2)


def _is_letter(ch: str) -> bool:
    return unicodedata.category(ch).startswith("L")


def generate_ngrams(text: str, max_grams: int = MAX_GRAMS) -> list[str]:
    """Return up to *max_grams* distinct letter-only n-grams, longest first.

    Only letters survive, so combining marks (Thai tone marks and vowel
    signs included) are dropped before grams are cut. Text with fewer than
    two characters yields nothing.
    """
    if len(text.strip()) < 2:
        return []

    letters = "".join(ch for ch in text.lower() if _is_letter(ch))
    grams: list[str] = []
    for size in GRAM_SIZES:
        for start in range(0, len(letters) - size + 1):
            gram = letters[start : start + size]
            if gram not in grams:
                grams.append(gram)
            if len(grams) >= max_grams:
                return grams
    return grams
