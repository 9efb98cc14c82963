"""
Bring the local repository and its correction refs in line with the remote.

Remote correction refs are fetched into `refs/remotes/<remote>/spellcheck/*`
and compared with `refs/spellcheck/*` one blob at a time. Diverged histories
are merged field by field and the merge commit is pushed back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from correction_store.errors import CorruptRecordError, MergeInvariantError, ObjectNotFound
from correction_store.merge import merge_records
from correction_store.object_store import GitObjectStore, ObjectCache
from correction_store.repository import (
    LOCAL,
    MERGE,
    ORIGINAL_FILE,
    REMOTE,
    SPELLCHECK_PREFIX,
    CorrectionRepository,
)


CREATED = "created"
UP_TO_DATE = "up_to_date"
FAST_FORWARD = "fast_forward"
PUSHED = "pushed"
MERGED = "merged"
DIVERGED = "diverged"
ABSENT = "absent"


@dataclass
class SyncReport:
    cloned: bool = False
    branch: Optional[str] = None
    corrections: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class CorrectionSync:
    """Pull the main branch and reconcile every correction ref with the remote."""

    def __init__(
        self,
        store: GitObjectStore,
        repository: CorrectionRepository,
        remote_url: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.repository = repository
        self.remote_url = remote_url
        self._logger = logger or logging.getLogger(__name__)

    @property
    def tracking_ref(self) -> str:
        return f"refs/remotes/{self.store.remote}/{self.repository.branch}"

    def update_repo(self, cache: Optional[ObjectCache] = None) -> SyncReport:
        """
        Clone when the repository is missing, otherwise pull the branch;
        then reconcile correction refs.
        """
        report = SyncReport()
        if not self.store.exists():
            if not self.remote_url:
                raise ValueError(f"No repository at {self.store.git_dir} and no remote URL to clone.")
            self.store.clone_from(self.remote_url)
            report.cloned = True
        elif self.remote_url and not self.store.has_remote():
            self.store.add_remote(self.remote_url)

        if not self.store.has_remote():
            self._logger.info("No remote configured; nothing to sync.")
            return report

        if not report.cloned:
            report.branch = self.pull_branch()
        self.sync_correction_refs(report, cache)
        return report

    def pull_branch(self) -> str:
        branch_ref = self.repository.branch_ref
        remote_heads = self.store.list_remote_refs("refs/heads")
        local = self.store.try_resolve_ref(branch_ref)

        if branch_ref not in remote_heads:
            if local is None:
                return ABSENT
            self.store.push(branch_ref, force=False)
            return PUSHED

        self.store.fetch([f"+{branch_ref}:{self.tracking_ref}"])
        remote = self.store.resolve_ref(self.tracking_ref)

        if local is None:
            self.store.write_ref(branch_ref, remote)
            return CREATED
        if local == remote:
            return UP_TO_DATE

        base = self.store.find_merge_base(local, remote)
        if base == local:
            self.store.write_ref(branch_ref, remote, force=False)
            self._logger.info("Fast-forwarded %s to %s", self.repository.branch, remote)
            return FAST_FORWARD
        if base == remote:
            self.store.push(branch_ref, force=False)
            return PUSHED

        self._logger.warning(
            "Branch %s diverged from %s (local %s, remote %s); leaving it alone.",
            self.repository.branch,
            self.store.remote,
            local,
            remote,
        )
        return DIVERGED

    def sync_correction_refs(
        self,
        report: Optional[SyncReport] = None,
        cache: Optional[ObjectCache] = None,
    ) -> SyncReport:
        report = report or SyncReport()
        remote_prefix = self.repository.remote_prefix
        self.store.fetch([f"+{SPELLCHECK_PREFIX}*:{remote_prefix}*"])

        local_ids = {name[len(SPELLCHECK_PREFIX):] for name in self.store.list_refs(SPELLCHECK_PREFIX)}
        remote_ids = {name[len(remote_prefix):] for name in self.store.list_refs(remote_prefix)}

        for spellcheck_id in sorted(local_ids | remote_ids):
            try:
                outcome = self.reconcile(spellcheck_id, cache)
            except (CorruptRecordError, MergeInvariantError) as exc:
                self._logger.error("Cannot reconcile correction %s: %s", spellcheck_id, exc)
                report.failed[spellcheck_id] = str(exc)
                continue
            report.corrections[spellcheck_id] = outcome
            if outcome != UP_TO_DATE:
                self._logger.info("Correction %s: %s", spellcheck_id, outcome)
        return report

    def reconcile(self, spellcheck_id: str, cache: Optional[ObjectCache] = None) -> str:
        """Bring one correction ref in line with its remote counterpart."""
        local_ref = self.repository.local_ref(spellcheck_id)
        local = self.store.try_resolve_ref(local_ref)
        remote = self.store.try_resolve_ref(self.repository.remote_ref(spellcheck_id))

        if remote is None:
            if local is None:
                raise ObjectNotFound(local_ref, "ref")
            self.store.push(local_ref, force=True)
            return PUSHED
        if local is None:
            self.store.write_ref(local_ref, remote)
            return CREATED
        if local == remote:
            return UP_TO_DATE

        base = self.store.find_merge_base(local, remote)
        if base == local:
            self.store.write_ref(local_ref, remote, force=False)
            return FAST_FORWARD
        if base == remote:
            self.store.push(local_ref, force=True)
            return PUSHED

        self._merge(spellcheck_id, base, cache)
        return MERGED

    def _merge(self, spellcheck_id: str, base: Optional[str], cache: Optional[ObjectCache]) -> str:
        repo = self.repository
        local_record = repo.get_correction(
            spellcheck_id=spellcheck_id, ref_type=LOCAL, cache=cache, apply_dictionary=False
        )
        remote_record = repo.get_correction(
            spellcheck_id=spellcheck_id, ref_type=REMOTE, cache=cache, apply_dictionary=False
        )

        # the merge base may be a main-branch commit when both sides were
        # seeded from the same tip; only a correction of this blob counts
        ancestor = None
        if base is not None and repo.correction_tree(base, cache).get(ORIGINAL_FILE) == spellcheck_id:
            ancestor = repo.read_record(base, cache)

        merged = merge_records(local_record, remote_record, ancestor)
        return repo.correct_text(None, merged, mode=MERGE, spellcheck_id=spellcheck_id)
