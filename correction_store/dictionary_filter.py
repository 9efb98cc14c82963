"""
Read-time pruning of spelling corrections for words in the user dictionary.

Grammar-tool results are stored as they were produced. When a word is added
to the dictionary later, the stored record still contains the "fix" for it;
this filter undoes those fixes in the returned view. Nothing is written back.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, Iterable, List, Set

from correction_store.records import Record


SPELLING_CATEGORIES = {"TYPOS", "SPELLING", "MISSPELLING"}


def normalize_words(words: Iterable[str]) -> Set[str]:
    return {w.strip().casefold() for w in words if isinstance(w, str) and w.strip()}


def is_spelling_rule(correction: Dict[str, Any]) -> bool:
    rule = correction.get("rule")
    if not isinstance(rule, dict):
        return False
    category = str(rule.get("category") or "").upper()
    if category in SPELLING_CATEGORIES:
        return True
    return "SPELL" in str(rule.get("id") or "").upper()


def _is_dictionary_hit(correction: Dict[str, Any], words: Set[str]) -> bool:
    original = correction.get("original")
    if not isinstance(original, str) or not isinstance(correction.get("replacedWith"), str):
        return False
    return original.strip().casefold() in words and is_spelling_rule(correction)


def _filter_corrected(corrected: Dict[str, Any], words: Set[str]) -> Dict[str, Any]:
    text: str = corrected["text"]
    corrections: List[Dict[str, Any]] = sorted(
        corrected.get("corrections", []), key=lambda c: c.get("offset", 0)
    )

    idx = len(corrections) - 1
    while idx >= 0:
        entry = corrections[idx]
        if _is_dictionary_hit(entry, words):
            offset = entry["offset"]
            replaced = entry["replacedWith"]
            original = entry["original"]
            text = text[:offset] + original + text[offset + len(replaced):]
            delta = len(original) - len(replaced)
            del corrections[idx]
            # entries behind the splice point move with the text
            for later in corrections[idx:]:
                later["offset"] += delta
        idx -= 1

    return {**corrected, "text": text, "corrections": corrections}


def filter_dictionary_words(record: Record, words: Iterable[str]) -> Record:
    """Return a copy of `record` with dictionary-listed spelling fixes reverted."""
    filtered = deepcopy(record)
    word_set = normalize_words(words)
    if not word_set:
        return filtered

    for entry in filtered.get("paragraphInfo", []):
        corrected = entry.get("corrected")
        if isinstance(corrected, dict) and isinstance(corrected.get("text"), str):
            entry["corrected"] = _filter_corrected(corrected, word_set)
    return filtered
