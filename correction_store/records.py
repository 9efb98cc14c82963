"""
Correction records as plain JSON documents.

A record is keyed by the blob it was computed against, so it never needs a
staleness flag: a paragraph whose text changed simply is not part of the new
blob's record. Helpers here build, seed and flatten records; persistence
lives in `correction_store.repository`.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, List, Optional, Sequence, Tuple

from correction_store.errors import BuildTextError
from correction_store.paragraphs import join_paragraphs


Record = Dict[str, Any]
ParagraphEntry = Dict[str, Any]

SELECT_ORIGINAL = "original"
SELECT_EDITED = "edited"
SELECT_CORRECTED = "corrected"
KIND_CORRECTION = "correction"
KIND_ALTERNATIVE = "alternative"

UNKNOWN_MODEL = "unknown"
STANDARD_STYLE = "standard"


def new_paragraph_entry(original: str) -> ParagraphEntry:
    return {"original": original, "judgment": {}}


def new_record(paragraphs: Sequence[str]) -> Record:
    return {
        "timeSpentMs": 0,
        "messages": [],
        "paragraphInfo": [new_paragraph_entry(text) for text in paragraphs],
    }


def seed_record(paragraphs: Sequence[str], previous: Optional[Record]) -> Record:
    """
    Start a record for new content, reusing entries of `previous` whose
    `original` text is unchanged. Duplicate paragraphs are matched in order.
    """
    record = new_record(paragraphs)
    if not previous:
        return record

    available: Dict[str, List[ParagraphEntry]] = {}
    for entry in previous.get("paragraphInfo", []):
        original = entry.get("original")
        if isinstance(original, str):
            available.setdefault(original, []).append(entry)

    for idx, text in enumerate(paragraphs):
        candidates = available.get(text)
        if candidates:
            record["paragraphInfo"][idx] = deepcopy(candidates.pop(0))
    return record


def selection_key(entry: ParagraphEntry) -> Optional[Tuple[str, ...]]:
    selected = entry.get("selectedText")
    if selected is None:
        return None
    if isinstance(selected, str):
        return (selected,)
    return tuple(selected)


def _alternative_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]
    return None


def resolve_selected_text(entry: ParagraphEntry) -> Optional[str]:
    """Text chosen by `selectedText`, or `None` when it does not resolve."""
    key = selection_key(entry)
    if key is None:
        return None

    if key == (SELECT_ORIGINAL,):
        return entry.get("original")
    if key == (SELECT_EDITED,):
        edited = entry.get("edited")
        return edited if isinstance(edited, str) else None
    if key == (SELECT_CORRECTED,):
        corrected = entry.get("corrected")
        if isinstance(corrected, dict) and isinstance(corrected.get("text"), str):
            return corrected["text"]
        return None

    judgment = entry.get("judgment", {}).get(key[0])
    if not isinstance(judgment, dict):
        return None
    text = judgment.get("text", {})
    if len(key) == 2 and key[1] == KIND_CORRECTION:
        correction = text.get("correction")
        return correction if isinstance(correction, str) else None
    if len(key) == 3 and key[1] == KIND_ALTERNATIVE:
        return _alternative_text(text.get("alternative", {}).get(key[2]))
    return None


def paragraph_text(entry: ParagraphEntry, index: int = 0) -> str:
    """
    Resolve one paragraph to the text that goes into the flattened correction.

    Order: explicit selection, then the correction of the first model in
    sorted order, then the original text.
    """
    resolved = resolve_selected_text(entry)
    if resolved is not None:
        return resolved

    judgments = entry.get("judgment") or {}
    for model in sorted(judgments):
        correction = judgments[model].get("text", {}).get("correction")
        if isinstance(correction, str):
            return correction

    original = entry.get("original")
    if isinstance(original, str):
        return original
    raise BuildTextError(index, "no selected text, model correction or original available")


def build_corrected_text(record: Record) -> str:
    return join_paragraphs(
        [paragraph_text(entry, idx) for idx, entry in enumerate(record.get("paragraphInfo", []))]
    )


def is_paragraph_done(entry: ParagraphEntry) -> bool:
    return bool(entry.get("judgment")) or entry.get("corrected") is not None


def record_progress(record: Record) -> Tuple[int, int]:
    paragraphs = record.get("paragraphInfo", [])
    done = sum(1 for entry in paragraphs if is_paragraph_done(entry))
    return done, len(paragraphs)


def add_message(record: Record, message: Any) -> None:
    record.setdefault("messages", []).append(message)


def add_time(record: Record, elapsed_ms: int) -> None:
    if elapsed_ms < 0:
        raise ValueError("elapsed time cannot be negative")
    record["timeSpentMs"] = int(record.get("timeSpentMs", 0)) + int(elapsed_ms)


def _same_items(a: Sequence[Any], b: Sequence[Any]) -> bool:
    return sorted(map(str, a)) == sorted(map(str, b))


def apply_judgment(
    entry: ParagraphEntry,
    model: str,
    style: str,
    result: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Store one model result for `style` on a paragraph entry.

    `result` carries `corrected`, `alternative`, `goodPoints`, `badPoints`,
    `judgment` (the score) and `involvedCharacters`. A re-run that changes a
    previously stored value appends to the judgment's `protocol` instead of
    silently overwriting history.
    """
    judgments = entry.setdefault("judgment", {})
    existing = judgments.get(model)
    if existing is None:
        judgments[model] = {
            "goodPoints": list(result.get("goodPoints", [])),
            "badPoints": list(result.get("badPoints", [])),
            "score": result.get("judgment", 0),
            "text": {
                "correction": result["corrected"],
                "alternative": {style: result["alternative"]},
            },
            "involvedCharacters": list(result.get("involvedCharacters", [])),
        }
        return judgments[model]

    existing["text"].setdefault("alternative", {})[style] = result["alternative"]
    protocol = existing.setdefault("protocol", [])

    def _note(description: str, old: Any, new: Any) -> None:
        protocol.append(
            {"style": style, "description": description, "oldValue": old, "newValue": new}
        )

    if result["corrected"] != existing["text"].get("correction"):
        _note("Correction changed", existing["text"].get("correction"), result["corrected"])
        existing["text"]["correction"] = result["corrected"]
    for field, label in (
        ("badPoints", "Bad Points changed"),
        ("goodPoints", "Good Points changed"),
        ("involvedCharacters", "Involved Characters changed"),
    ):
        new_value = list(result.get(field, []))
        if not _same_items(new_value, existing.get(field, [])):
            _note(label, existing.get(field, []), new_value)
            existing[field] = new_value
    if "judgment" in result and result["judgment"] != existing.get("score"):
        _note("Score changed", existing.get("score"), result["judgment"])
        existing["score"] = result["judgment"]
    if not protocol:
        del existing["protocol"]
    return existing
