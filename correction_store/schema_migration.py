"""
Detect and upgrade stored correction record schemas.

Two generations of records exist in the wild:

- legacy: one flat judgment per paragraph with `goodPoints`/`badPoints` as
  plain strings and a single `alternative` text under `text`;
- current: a `judgment` map keyed by model, with per-style alternatives.

Both are described by JSON Schema documents under `schemas/`. The schemas
are written to be mutually exclusive, so detection never has to guess.
Free-form reviews have a schema of their own there as well.
"""

from __future__ import annotations

import enum
import json
from copy import deepcopy
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Tuple

from jsonschema import Draft202012Validator, ValidationError

from correction_store.errors import CorruptRecordError
from correction_store.records import (
    KIND_ALTERNATIVE,
    KIND_CORRECTION,
    STANDARD_STYLE,
    UNKNOWN_MODEL,
)


SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
CURRENT_SCHEMA_PATH = SCHEMA_DIR / "correction_record.schema.json"
LEGACY_SCHEMA_PATH = SCHEMA_DIR / "legacy_correction_record.schema.json"
REVIEW_SCHEMA_PATH = SCHEMA_DIR / "review.schema.json"


class RecordKind(str, enum.Enum):
    LEGACY = "legacy"
    CURRENT = "current"


@dataclass(frozen=True)
class MigrationResult:
    """Tagged result: `kind` names the schema the input matched, `record` is always current."""

    kind: RecordKind
    record: Dict[str, Any]

    @property
    def migrated(self) -> bool:
        return self.kind is RecordKind.LEGACY


@lru_cache(maxsize=None)
def schema_validator(schema_path: Path) -> Draft202012Validator:
    """Validator for one bundled schema; each file is parsed once per process."""
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _error_path(err: ValidationError) -> str:
    return ".".join(str(p) for p in err.absolute_path) or "<root>"


def validate_document(document: Any, schema_path: Path) -> Tuple[bool, List[str]]:
    """(is_valid, errors) with errors as `location: message`, sorted by location."""
    errors = sorted(schema_validator(schema_path).iter_errors(document), key=_error_path)
    return not errors, [f"{_error_path(err)}: {err.message}" for err in errors]


def validate_current(document: Any) -> Tuple[bool, List[str]]:
    return validate_document(document, CURRENT_SCHEMA_PATH)


def validate_legacy(document: Any) -> Tuple[bool, List[str]]:
    return validate_document(document, LEGACY_SCHEMA_PATH)


def validate_review(document: Any) -> Tuple[bool, List[str]]:
    return validate_document(document, REVIEW_SCHEMA_PATH)


def detect_schema(document: Any) -> RecordKind:
    """Return which schema `document` matches; legacy is tried first."""
    legacy_ok, legacy_errors = validate_legacy(document)
    if legacy_ok:
        return RecordKind.LEGACY
    current_ok, current_errors = validate_current(document)
    if current_ok:
        return RecordKind.CURRENT
    raise CorruptRecordError(
        "Stored correction record matches neither schema",
        legacy_errors=legacy_errors,
        current_errors=current_errors,
    )


def _lift_selected_text(selected: Any, model: str, has_judgment: bool) -> Any:
    if selected == KIND_CORRECTION:
        return [model, KIND_CORRECTION] if has_judgment else None
    if selected == KIND_ALTERNATIVE:
        return [model, KIND_ALTERNATIVE, STANDARD_STYLE] if has_judgment else None
    return selected


def _lift_paragraph(paragraph: Dict[str, Any]) -> Dict[str, Any]:
    text = paragraph["text"]
    original = text["original"]
    legacy_judgment = paragraph.get("judgment")

    lifted: Dict[str, Any] = {"original": original, "judgment": {}}
    if "edited" in paragraph:
        lifted["edited"] = paragraph["edited"]
    if isinstance(paragraph.get("corrected"), dict):
        lifted["corrected"] = deepcopy(paragraph["corrected"])

    model = UNKNOWN_MODEL
    has_output = "correction" in text or "alternative" in text
    if legacy_judgment is not None or has_output:
        legacy_judgment = legacy_judgment or {}
        model = legacy_judgment.get("model") or UNKNOWN_MODEL
        alternative = {STANDARD_STYLE: text["alternative"]} if "alternative" in text else {}
        lifted["judgment"][model] = {
            "goodPoints": [legacy_judgment["goodPoints"]] if "goodPoints" in legacy_judgment else [],
            "badPoints": [legacy_judgment["badPoints"]] if "badPoints" in legacy_judgment else [],
            "score": legacy_judgment.get("score", 0),
            "text": {
                "correction": text.get("correction", original),
                "alternative": alternative,
            },
            "involvedCharacters": [],
        }

    selected = _lift_selected_text(
        paragraph.get("selectedText"), model, bool(lifted["judgment"])
    )
    if selected is not None:
        lifted["selectedText"] = selected
    return lifted


def lift_legacy_record(document: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a validated legacy record into the current shape."""
    time_spent = document.get("time_in_ms", 0)
    return {
        "timeSpentMs": int(time_spent),
        "messages": deepcopy(document.get("messages", [])),
        "paragraphInfo": [_lift_paragraph(p) for p in document["paragraphInfo"]],
    }


def migrate_record(document: Any) -> MigrationResult:
    """
    Normalize any stored record into the current schema.

    Migrating a current record is a no-op (a deep copy is returned), so
    migration is idempotent.
    """
    kind = detect_schema(document)
    if kind is RecordKind.CURRENT:
        return MigrationResult(RecordKind.CURRENT, deepcopy(document))

    lifted = lift_legacy_record(document)
    ok, errors = validate_current(lifted)
    if not ok:
        raise CorruptRecordError("Migrated legacy record is not a valid current record", current_errors=errors)
    return MigrationResult(RecordKind.LEGACY, lifted)


def load_record(raw: bytes) -> MigrationResult:
    """Decode a stored `metadata` blob and migrate it."""
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptRecordError(f"Stored correction record is not valid JSON: {exc}") from exc
    return migrate_record(document)
