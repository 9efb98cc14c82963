"""
Error taxonomy for the correction store.

Absence of a prior correction or of a remote ref is not an error; callers
get `None`/`False` for those. Everything here aborts the current operation.
"""

from __future__ import annotations

from typing import List, Optional


class CorrectionStoreError(Exception):
    """Base class for all correction store failures."""


class ObjectNotFound(CorrectionStoreError):
    """A ref, blob, tree or commit is absent from the object database."""

    def __init__(self, name: str, kind: str = "object") -> None:
        super().__init__(f"{kind} not found: {name}")
        self.name = name
        self.kind = kind


class NetworkError(CorrectionStoreError):
    """Transient remote failure (clone, fetch, push, ls-remote)."""


class PushRejected(NetworkError):
    """The remote refused a ref update that was not a fast-forward."""

    def __init__(self, ref: str, detail: str = "") -> None:
        message = f"push rejected for {ref}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.ref = ref


class RefConflict(CorrectionStoreError):
    """A non-force local ref update would not be a fast-forward."""

    def __init__(self, ref: str, current: Optional[str], proposed: str) -> None:
        super().__init__(f"ref {ref} at {current} cannot move to {proposed} without force")
        self.ref = ref
        self.current = current
        self.proposed = proposed


class CorruptRecordError(CorrectionStoreError):
    """A stored record matches neither the legacy nor the current schema."""

    def __init__(
        self,
        message: str,
        legacy_errors: Optional[List[str]] = None,
        current_errors: Optional[List[str]] = None,
    ) -> None:
        self.legacy_errors = list(legacy_errors or [])
        self.current_errors = list(current_errors or [])
        details: List[str] = []
        if self.legacy_errors:
            details.append("legacy: " + "; ".join(self.legacy_errors))
        if self.current_errors:
            details.append("current: " + "; ".join(self.current_errors))
        if details:
            message = f"{message} ({' | '.join(details)})"
        super().__init__(message)


class MergeInvariantError(CorrectionStoreError):
    """Three-way merge inputs disagree on paragraph structure."""


class BuildTextError(CorrectionStoreError):
    """No selectable text could be resolved for a paragraph."""

    def __init__(self, index: int, reason: str) -> None:
        super().__init__(f"paragraph {index}: {reason}")
        self.index = index


class RepositoryChanged(CorrectionStoreError):
    """The branch head moved while a background pass was running."""

    def __init__(self, expected: Optional[str], actual: Optional[str]) -> None:
        super().__init__(f"branch head moved from {expected} to {actual}")
        self.expected = expected
        self.actual = actual


class AlreadyRunningError(CorrectionStoreError):
    """A second background loop was started on the same state."""
