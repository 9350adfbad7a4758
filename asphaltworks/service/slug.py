from __future__ import annotations

import re
import unicodedata
from typing import Callable, Optional

_DISALLOWED = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"-+")


def slugify(text: str, *, fallback: str = "item") -> str:
    """Lower-case ASCII slug: accents stripped, words joined by single hyphens.

    >>> slugify("Réfection d'enrobé à chaud")
    'refection-denrobe-a-chaud'
    """
    decomposed = unicodedata.normalize("NFD", text or "")
    ascii_text = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()
    cleaned = _DISALLOWED.sub("", ascii_text).strip()
    slug = _DASHES.sub("-", _WHITESPACE.sub("-", cleaned)).strip("-")
    return slug or fallback


def unique_slug(
    base: str,
    exists: Callable[[str, Optional[int]], bool],
    *,
    exclude_id: Optional[int] = None,
) -> str:
    """First of ``base``, ``base-1``, ``base-2``... not taken by another record."""
    candidate = base
    counter = 1
    while exists(candidate, exclude_id):
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate
