"""
Background loop that keeps correction records current.

One pass: sync with the remote, list tracked files, then hand every file to
each phase in turn. Phases are plain callables supplied by collaborators
(grammar check, model judgment, ...); they read and write records through
the repository. The loop itself never interprets record contents.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from correction_store.config import StoreConfig
from correction_store.errors import (
    AlreadyRunningError,
    BuildTextError,
    CorruptRecordError,
    MergeInvariantError,
    RepositoryChanged,
)
from correction_store.object_store import ObjectCache
from correction_store.repository import CorrectionRepository
from correction_store.sync import CorrectionSync, SyncReport


Phase = Callable[[str], bool]
SleepFn = Callable[[float], None]

# failures confined to one file; the pass moves on to the next file
FILE_ERRORS = (CorruptRecordError, BuildTextError, MergeInvariantError)


@dataclass
class StoreState:
    """Mutable state shared by one loop; construct once and pass it in."""

    running: bool = False
    cache: ObjectCache = field(default_factory=ObjectCache)
    pass_head: Optional[str] = None
    passes: int = 0
    restarts: int = 0
    errors: int = 0
    skipped: Dict[str, str] = field(default_factory=dict)
    last_report: Optional[SyncReport] = None


class CorrectionLoop:
    def __init__(
        self,
        repository: CorrectionRepository,
        sync: CorrectionSync,
        phases: Sequence[Phase],
        config: StoreConfig,
        state: StoreState,
        sleep: SleepFn = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.repository = repository
        self.sync = sync
        self.phases = list(phases)
        self.config = config
        self.state = state
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)

    def run(self, max_passes: Optional[int] = None) -> None:
        """
        Run passes until `max_passes` attempts have been made (forever when
        `None`). A pass interrupted by a moved branch head restarts at once;
        any other failure waits `error_delay_seconds` before the next try.
        """
        if self.state.running:
            raise AlreadyRunningError("correction loop is already running")
        self.state.running = True
        attempts = 0
        try:
            while max_passes is None or attempts < max_passes:
                attempts += 1
                try:
                    self.run_pass()
                except RepositoryChanged as exc:
                    self.state.restarts += 1
                    self._logger.info("Restarting pass: %s", exc)
                    continue
                except Exception:
                    self.state.errors += 1
                    self._logger.exception(
                        "Correction pass failed; retrying in %.0fs", self.config.error_delay_seconds
                    )
                    self._sleep(self.config.error_delay_seconds)
                    continue
                self._sleep(self.config.poll_delay_seconds)
        finally:
            self.state.running = False

    def run_pass(self) -> None:
        state = self.state
        state.cache = ObjectCache()
        state.last_report = self.sync.update_repo(state.cache)
        state.pass_head = self.repository.head_commit()

        listing = self.repository.list_files(self.config.path_pattern, state.cache)
        files = self.order_files([entry["path"] for entry in listing])
        self._logger.info("Pass over %d files at %s", len(files), state.pass_head)

        state.skipped = {}
        for path in files:
            try:
                self._run_phases(path)
            except FILE_ERRORS as exc:
                state.skipped[path] = str(exc)
                self._logger.error("Skipping %s for this pass: %s", path, exc)
        self.ensure_still_valid()
        state.passes += 1

    def _run_phases(self, path: str) -> None:
        for phase in self.phases:
            self.ensure_still_valid()
            if phase(path):
                self._logger.debug("%s updated %s", getattr(phase, "__name__", phase), path)

    def order_files(self, paths: List[str]) -> List[str]:
        """Nearest existing correction first; never-corrected files last."""

        def _key(path: str):
            depth = self.repository.find_correction_depth(path, cache=self.state.cache)
            return (depth is None, depth or 0, path)

        return sorted(paths, key=_key)

    def ensure_still_valid(self) -> None:
        current = self.repository.store.try_resolve_ref(self.repository.branch_ref)
        if current != self.state.pass_head:
            raise RepositoryChanged(self.state.pass_head, current)
