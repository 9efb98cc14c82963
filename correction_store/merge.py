"""
Field-level three-way merge of correction records.

Used when the local and remote correction refs for the same blob have
diverged. All three inputs describe the same blob, so their paragraph lists
line up index by index; a disagreement on `original` means the inputs are
not what the caller thinks they are and is refused.

Rules:
- dict + dict: merge keys, remote wins on collision
- scalar: changed side wins; true conflict prefers remote, except `edited`
  which keeps both sides between conflict markers
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, List, Optional

from correction_store.errors import MergeInvariantError
from correction_store.records import ParagraphEntry, Record


CONFLICT_LOCAL = "<<<<<<< local"
CONFLICT_SEPARATOR = "======="
CONFLICT_REMOTE = ">>>>>>> remote"

_MISSING = object()


def conflict_text(local: str, remote: str) -> str:
    return "\n".join([CONFLICT_LOCAL, local, CONFLICT_SEPARATOR, remote, CONFLICT_REMOTE])


def _three_way(local: Any, remote: Any, base: Any) -> Any:
    """Resolve one value; returns `_MISSING` on a true conflict."""
    if local == remote:
        return local
    if remote == base:
        return local
    if local == base:
        return remote
    if local is None:
        return remote
    if remote is None:
        return local
    return _MISSING


def merge_edited(local: Optional[str], remote: Optional[str], base: Optional[str]) -> Optional[str]:
    merged = _three_way(local, remote, base)
    if merged is _MISSING:
        return conflict_text(local, remote)
    return merged


def _union(first: List[Any], second: List[Any]) -> List[Any]:
    merged = deepcopy(first)
    for item in second:
        if item not in merged:
            merged.append(deepcopy(item))
    return merged


def _merge_model_judgment(
    local: Dict[str, Any],
    remote: Dict[str, Any],
    base: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    merged = deepcopy(remote)
    local_text = local.get("text", {})
    remote_text = remote.get("text", {})
    base_text = (base or {}).get("text", {})

    local_alt = local_text.get("alternative", {})
    remote_alt = remote_text.get("alternative", {})
    base_alt = base_text.get("alternative", {})
    alternative: Dict[str, Any] = {}
    for style in list(remote_alt) + [s for s in local_alt if s not in remote_alt]:
        value = _three_way(local_alt.get(style), remote_alt.get(style), base_alt.get(style))
        if value is _MISSING:
            value = remote_alt[style]
        if value is not None:
            alternative[style] = deepcopy(value)

    local_correction = local_text.get("correction")
    remote_correction = remote_text.get("correction")
    if local_correction is None or remote_correction != base_text.get("correction"):
        correction = remote_correction
    else:
        correction = local_correction

    merged["text"] = {**deepcopy(remote_text), "correction": correction, "alternative": alternative}

    protocol = _union(remote.get("protocol", []), local.get("protocol", []))
    if protocol:
        merged["protocol"] = protocol
    return merged


def merge_judgments(
    local: Dict[str, Any],
    remote: Dict[str, Any],
    base: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    merged = {**deepcopy(local), **deepcopy(remote)}
    for model in remote:
        if model in local:
            merged[model] = _merge_model_judgment(
                local[model], remote[model], (base or {}).get(model)
            )
    return merged


def merge_paragraph(
    local: ParagraphEntry,
    remote: ParagraphEntry,
    base: Optional[ParagraphEntry],
) -> ParagraphEntry:
    merged: ParagraphEntry = {"original": local["original"]}

    edited = merge_edited(local.get("edited"), remote.get("edited"), (base or {}).get("edited"))
    if edited is not None:
        merged["edited"] = edited

    for key in ("selectedText", "corrected"):
        value = remote.get(key)
        if value is None:
            value = local.get(key)
        if value is not None:
            merged[key] = deepcopy(value)

    merged["judgment"] = merge_judgments(
        local.get("judgment", {}), remote.get("judgment", {}), (base or {}).get("judgment")
    )
    return merged


def _check_alignment(local: Record, remote: Record, ancestor: Optional[Record]) -> None:
    inputs = [("local", local), ("remote", remote)]
    if ancestor is not None:
        inputs.append(("ancestor", ancestor))
    expected = [p.get("original") for p in local.get("paragraphInfo", [])]
    for label, record in inputs[1:]:
        originals = [p.get("original") for p in record.get("paragraphInfo", [])]
        if len(originals) != len(expected):
            raise MergeInvariantError(
                f"{label} has {len(originals)} paragraphs, local has {len(expected)}"
            )
        for idx, (mine, theirs) in enumerate(zip(expected, originals)):
            if mine != theirs:
                raise MergeInvariantError(f"paragraph {idx} original differs between local and {label}")


def merge_records(local: Record, remote: Record, ancestor: Optional[Record] = None) -> Record:
    """
    Merge two diverged records of the same blob.

    `ancestor` is the record at the merge base; `None` when the two
    histories share no correction commit, in which case every field is
    treated as absent in the ancestor.
    """
    _check_alignment(local, remote, ancestor)
    base_paragraphs = (ancestor or {}).get("paragraphInfo") or [None] * len(local["paragraphInfo"])

    base_time = int((ancestor or {}).get("timeSpentMs", 0))
    local_time = int(local.get("timeSpentMs", 0))
    remote_time = int(remote.get("timeSpentMs", 0))
    time_spent = base_time + max(0, local_time - base_time) + max(0, remote_time - base_time)

    return {
        "timeSpentMs": time_spent,
        "messages": _union(local.get("messages", []), remote.get("messages", [])),
        "paragraphInfo": [
            merge_paragraph(mine, theirs, base)
            for mine, theirs, base in zip(
                local["paragraphInfo"], remote["paragraphInfo"], base_paragraphs
            )
        ],
    }
