"""
Canonical track identity.

Every cache tier is addressed by :attr:`TrackKey.slug`, a deterministic,
filesystem-safe string derived from artist and title.  Metadata from
different sources drifts (punctuation, accents, "feat." suffixes), so a
keyword-subset comparison is kept as an explicit fallback for locating an
existing entry when the exact slug misses.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Optional

MAX_PART_LENGTH = 100
# Two parts, the separator and a file suffix must fit a 255-byte file name
MAX_PART_BYTES = 112
SLUG_SEPARATOR = "--"

_RESERVED = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\-.]")
_UNDERSCORES = re.compile(r"_+")
_TOKEN_SPLIT = re.compile(r"[_\-.]+")


def _is_latin(ch: str) -> bool:
    return unicodedata.name(ch, "").startswith("LATIN")


def strip_diacritics(text: str) -> str:
    """
    Drop accents from Latin letters, leaving other scripts intact.

    Marks on kana and similar scripts are part of the letter (ず is not
    す), so they are kept and recomposed.
    """
    kept: list[str] = []
    for ch in unicodedata.normalize("NFKD", text):
        if unicodedata.combining(ch) and kept and _is_latin(kept[-1]):
            continue
        kept.append(ch)
    return unicodedata.normalize("NFC", "".join(kept))


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Longest prefix of *text* whose UTF-8 encoding fits in *max_bytes*."""
    return text.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")


def sanitize(text: str, max_length: int = MAX_PART_LENGTH, max_bytes: int = MAX_PART_BYTES) -> str:
    """
    Normalize one metadata field into a key fragment.

    Lower-cases, trims, drops accents and filesystem-reserved characters,
    turns whitespace runs into single underscores and removes anything that
    is not a word character, ``-``, ``_`` or ``.``.  The result is capped at
    *max_length* characters and *max_bytes* UTF-8 bytes.

    >>> sanitize("  Beyoncé: Halo ")
    'beyonce_halo'
    """
    text = strip_diacritics(text).lower().strip()
    text = _RESERVED.sub("", text)
    text = _WHITESPACE.sub("_", text)
    text = _NON_WORD.sub("", text)
    text = _UNDERSCORES.sub("_", text)
    text = truncate_utf8(text.strip("_")[:max_length], max_bytes)
    return text.strip("_")


def keywords_of(slug: str) -> frozenset:
    """Tokens of a slug (or sanitized text) longer than one character."""
    return frozenset(tok for tok in _TOKEN_SPLIT.split(slug) if len(tok) > 1)


@dataclass(frozen=True)
class TrackKey:
    """Artist/title pair identifying a track across all caches."""

    artist: str
    title: str

    def __post_init__(self):
        if not any(self.slug_parts()):
            raise ValueError("TrackKey needs a non-empty artist or title")

    def slug_parts(self) -> tuple[str, str]:
        return sanitize(self.artist), sanitize(self.title)

    @property
    def slug(self) -> str:
        artist, title = self.slug_parts()
        return f"{artist}{SLUG_SEPARATOR}{title}"

    @property
    def keywords(self) -> frozenset:
        artist, title = self.slug_parts()
        return keywords_of(artist) | keywords_of(title)

    @property
    def search_query(self) -> str:
        """Free-text query used by the media resolver."""
        return f"{self.artist} {self.title} official audio"

    def __str__(self) -> str:
        return f"{self.artist} - {self.title}"


def match_fuzzy(key: TrackKey, candidates: Iterable[str]) -> Optional[str]:
    """
    Find the stored slug whose keywords contain all of *key*'s keywords.

    When several candidates qualify, the one with the fewest extra keywords
    wins; remaining ties go to the alphabetically first slug.

    Args:
        key: Track being looked up.
        candidates: Slugs of existing entries.

    Returns:
        The best matching slug, or None.
    """
    wanted = key.keywords
    if not wanted:
        return None

    best: Optional[tuple[int, str]] = None
    for candidate in candidates:
        tokens = keywords_of(candidate)
        if not wanted <= tokens:
            continue
        rank = (len(tokens - wanted), candidate)
        if best is None or rank < best:
            best = rank
    return None if best is None else best[1]
