"""!
@brief Name-matching helpers for registry and installed-program lookups.
@details Two independent matchers live here. :func:`is_fuzzy_match` relates an
item's display name to a registry ``DisplayName``. :func:`match_package_id`
relates a dotted package-manager id (``Publisher.Product``) to the list of
installed Win32 programs. Both are pure and side-effect free.
"""
from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Optional, Tuple

from . import constants

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

InstalledProgram = Tuple[str, str]
"""!
@brief ``(display_name, publisher)`` pair reported by WMI or the registry.
"""


def normalize_display_name(value: str | None) -> str:
    """!
    @brief Strip punctuation, lowercase, and collapse whitespace.
    """

    text = _PUNCTUATION.sub("", value or "").lower()
    return _WHITESPACE.sub(" ", text).strip()


def is_fuzzy_match(search_name: str, display_name: str) -> bool:
    """!
    @brief Decide whether ``display_name`` plausibly names the item ``search_name``.
    @details After normalisation the names match when they are equal, when one
    contains the other on word boundaries, or when they share at least two
    words (one word if the search name has a single word).
    """

    wanted = normalize_display_name(search_name)
    candidate = normalize_display_name(display_name)
    if not wanted or not candidate:
        return False
    if wanted == candidate:
        return True
    if f" {wanted} " in f" {candidate} " or f" {candidate} " in f" {wanted} ":
        return True

    wanted_words = wanted.split()
    candidate_words = set(candidate.split())
    shared = sum(1 for word in wanted_words if word in candidate_words)
    return shared >= min(len(wanted_words), 2)


def fold_text(value: str | None) -> str:
    """!
    @brief Lowercase ``value`` and drop diacritics (``é`` becomes ``e``).
    """

    decomposed = unicodedata.normalize("NFKD", value or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower().strip()


def is_main_application(display_name: str) -> bool:
    """!
    @brief Reject helper, updater and plugin entries that share a product name.
    """

    return not any(keyword in display_name for keyword in constants.UTILITY_KEYWORDS)


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


def _publisher_matches(publisher: str, vendor: str) -> bool:
    return not vendor or publisher in fold_text(vendor)


def match_package_id(package_id: str, programs: Iterable[InstalledProgram]) -> Optional[str]:
    """!
    @brief Find the installed program a package-manager id refers to.
    @details The id is split on ``.``: the first part is the publisher, the
    remaining parts form the product name. Matching is attempted in three
    passes (exact display name, ``"<product> "``/``"<product>-"`` prefix, whole
    word) and the latter two skip utility entries. When a vendor is reported it
    must contain the publisher. Ids without a dot must equal a display name.
    @returns The matching display name, or ``None``.
    """

    candidates = [(name, vendor or "") for name, vendor in programs if name]
    parts = [part for part in package_id.split(".") if part]
    if len(parts) < 2:
        wanted = fold_text(package_id)
        return next((name for name, _ in candidates if fold_text(name) == wanted), None)

    publisher = fold_text(parts[0])
    product = fold_text(" ".join(parts[1:]))
    folded = [(name, fold_text(name), vendor) for name, vendor in candidates]

    for name, display, vendor in folded:
        if display == product and _publisher_matches(publisher, vendor):
            return name

    for name, display, vendor in folded:
        if (display.startswith(product + " ") or display.startswith(product + "-")) and is_main_application(display):
            if _publisher_matches(publisher, vendor):
                return name

    for name, display, vendor in folded:
        if _contains_word(display, product) and is_main_application(display):
            if _publisher_matches(publisher, vendor):
                return name

    return None


__all__ = [
    "InstalledProgram",
    "fold_text",
    "is_fuzzy_match",
    "is_main_application",
    "match_package_id",
    "normalize_display_name",
]
