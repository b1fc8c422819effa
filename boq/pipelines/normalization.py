"""Text normalization for BoQ and price-list descriptions.

Handles Unicode, case, punctuation, whitespace, construction synonyms,
light stemming and stop-token filtering. All functions are pure.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass

from config.construction_terms import STOP_WORDS, SYNONYM_GROUPS

_SYNONYMS: dict[str, str] = {
    synonym: group["canonical"]
    for group in SYNONYM_GROUPS
    for synonym in group["synonyms"]
}

_STEM_SUFFIXES = ("ings", "ing", "ed")


@dataclass(frozen=True)
class NormalizerOptions:
    """Toggles for the optional normalization steps."""
    keep_inner: frozenset[str] = frozenset({"-", "/", "."})
    apply_synonyms: bool = True
    apply_stemming: bool = True
    remove_stop_words: bool = True
    stop_words: frozenset[str] = STOP_WORDS


DEFAULT_OPTIONS = NormalizerOptions()


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_punctuation(text: str) -> str:
    """Fold smart quotes and dash variants to their ASCII forms."""
    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")
    text = text.replace('–', '-').replace('—', '-')
    return text


def strip_punctuation(text: str, keep_inner: frozenset[str]) -> str:
    """Replace punctuation with spaces.

    Characters in ``keep_inner`` survive only between two alphanumerics, so
    ``c35/45`` and ``ready-mix`` stay intact while a trailing ``-`` is dropped.
    """
    chars = list(text)
    out = []
    for i, ch in enumerate(chars):
        if ch.isalnum() or ch.isspace():
            out.append(ch)
        elif (
            ch in keep_inner
            and 0 < i < len(chars) - 1
            and chars[i - 1].isalnum()
            and chars[i + 1].isalnum()
        ):
            out.append(ch)
        else:
            out.append(' ')
    return ''.join(out)


def stem_token(token: str) -> str:
    """Strip common English suffixes from tokens longer than three characters."""
    if len(token) <= 3 or not token.isalpha():
        return token
    for suffix in _STEM_SUFFIXES:
        if token.endswith(suffix) and len(token) - len(suffix) >= 3:
            return token[: -len(suffix)]
    if token.endswith('s') and not token.endswith(('ss', 'us', 'is')):
        return token[:-1]
    return token


def canonical_token(token: str, options: NormalizerOptions = DEFAULT_OPTIONS) -> str:
    """Map a token through the synonym table and stemmer."""
    if options.apply_synonyms and token in _SYNONYMS:
        return _SYNONYMS[token]
    if options.apply_stemming:
        token = stem_token(token)
    if options.apply_synonyms:
        token = _SYNONYMS.get(token, token)
    return token


def normalize(text: str | None, options: NormalizerOptions = DEFAULT_OPTIONS) -> str:
    """Canonical form of a description used for embedding and overlap scoring.

    Never raises; empty or whitespace-only input yields an empty string.

    Args:
        text: Raw description
        options: Optional-step toggles

    Returns:
        Lower-cased, punctuation-stripped, single-spaced text
    """
    if not text or not text.strip():
        return ""

    text = unicodedata.normalize('NFC', text)
    text = normalize_punctuation(text)
    text = text.lower()
    text = strip_punctuation(text, options.keep_inner)

    tokens = []
    for token in normalize_whitespace(text).split(' '):
        if not token:
            continue
        token = canonical_token(token, options)
        if options.remove_stop_words and token in options.stop_words:
            continue
        tokens.append(token)

    return ' '.join(tokens)
