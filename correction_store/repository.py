"""
Content-addressed correction records on top of a git object database.

Every tracked file is identified by the blob OID of its content. The record
computed for that content lives in a commit under `refs/spellcheck/<oid>`,
whose tree holds three blobs:

- `correction`: flattened corrected text
- `original`: the tracked blob itself
- `metadata`: the JSON correction record

Editing an unrelated file, or rebasing the main history, never invalidates a
record: only a change of the file's own content produces a new OID.

Reviews use the same layout under `refs/reviews/<id>`: `review.json` plus a
`target` entry naming the reviewed blob.
"""

from __future__ import annotations

import json
import logging
import re
from collections import deque
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern, Set, Tuple, Union
from uuid import uuid4

from correction_store.config import DEFAULT_DICTIONARY_PATH
from correction_store.dictionary_filter import filter_dictionary_words
from correction_store.errors import CorruptRecordError, ObjectNotFound
from correction_store.object_store import (
    BLOB_MODE,
    TREE_MODE,
    GitObjectStore,
    ObjectCache,
    Signature,
    TreeEntry,
)
from correction_store.paragraphs import split_paragraphs
from correction_store.records import Record, build_corrected_text, record_progress, seed_record
from correction_store.schema_migration import RecordKind, load_record, validate_review


LOCAL = "local"
REMOTE = "remote"
COMMON_PARENT = "common parent"

FILE_CHANGE = "fileChange"
MERGE = "merge"

SPELLCHECK_PREFIX = "refs/spellcheck/"
REVIEW_PREFIX = "refs/reviews/"

CORRECTION_FILE = "correction"
ORIGINAL_FILE = "original"
METADATA_FILE = "metadata"
REVIEW_FILE = "review.json"
TARGET_FILE = "target"

DEFAULT_AUTHOR = Signature("Review Bot", "noreply@review.bot")


@dataclass
class CommitSpec:
    """Caller-supplied commit details for user-initiated writes."""

    message: Optional[str] = None
    author: Optional[Signature] = None
    committer: Optional[Signature] = None


def encode_record(record: Record) -> bytes:
    return (json.dumps(record, indent=2, ensure_ascii=False, sort_keys=True) + "\n").encode("utf-8")


class CorrectionRepository:
    """Read and write correction records addressed by blob OID."""

    def __init__(
        self,
        store: GitObjectStore,
        branch: str = "main",
        dictionary_path: str = DEFAULT_DICTIONARY_PATH,
        author: Signature = DEFAULT_AUTHOR,
        push_enabled: Optional[bool] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.branch = branch
        self.dictionary_path = dictionary_path
        self.author = author
        self._push_enabled = push_enabled
        self._logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # naming

    @property
    def branch_ref(self) -> str:
        return f"refs/heads/{self.branch}"

    @staticmethod
    def local_ref(spellcheck_id: str) -> str:
        return f"{SPELLCHECK_PREFIX}{spellcheck_id}"

    @property
    def remote_prefix(self) -> str:
        return f"refs/remotes/{self.store.remote}/spellcheck/"

    def remote_ref(self, spellcheck_id: str) -> str:
        return f"{self.remote_prefix}{spellcheck_id}"

    @property
    def push_enabled(self) -> bool:
        if self._push_enabled is None:
            return self.store.has_remote()
        return self._push_enabled

    # ------------------------------------------------------------------
    # main history

    def head_commit(self) -> str:
        return self.store.resolve_ref(self.branch_ref)

    def _resolve_path(self, commit: str, path: str, cache: Optional[ObjectCache]) -> TreeEntry:
        if path.startswith("/") or path.endswith("/") or not path:
            raise ValueError(f"Path must be relative without leading or trailing slash: {path!r}")
        tree = self.store.read_commit(commit, cache).tree
        segments = path.split("/")
        entry: Optional[TreeEntry] = None
        for depth, name in enumerate(segments):
            entry = next((e for e in self.store.read_tree(tree, cache) if e.name == name), None)
            if entry is None:
                raise ObjectNotFound(f"{commit}:{path}", "path")
            if depth < len(segments) - 1:
                if not entry.is_tree:
                    raise ObjectNotFound(f"{commit}:{path}", "path")
                tree = entry.oid
        return entry  # type: ignore[return-value]

    def get_spellcheck_id(
        self,
        path: str,
        commit: Optional[str] = None,
        cache: Optional[ObjectCache] = None,
    ) -> str:
        """Blob OID of `path` at `commit` (default: branch tip)."""
        entry = self._resolve_path(commit or self.head_commit(), path, cache)
        if entry.type != "blob":
            raise ObjectNotFound(path, "blob")
        return entry.oid

    def get_text(
        self,
        path: str,
        commit: Optional[str] = None,
        cache: Optional[ObjectCache] = None,
    ) -> str:
        oid = self.get_spellcheck_id(path, commit, cache)
        return self.store.read_blob(oid, cache).decode("utf-8")

    def _walk_first_parents(self, commit: str, depth: int, cache: Optional[ObjectCache]) -> Optional[str]:
        current = commit
        for _ in range(depth):
            parents = self.store.read_commit(current, cache).parents
            if not parents:
                return None
            current = parents[0]
        return current

    def _list_files(self, tree: str, prefix: str, cache: Optional[ObjectCache]) -> List[TreeEntry]:
        files: List[TreeEntry] = []
        pending = [(tree, prefix)]
        while pending:
            tree_oid, base = pending.pop()
            for entry in self.store.read_tree(tree_oid, cache):
                full = f"{base}{entry.name}"
                if entry.is_tree:
                    pending.append((entry.oid, f"{full}/"))
                elif entry.type == "blob":
                    files.append(TreeEntry(entry.mode, entry.type, entry.oid, full))
        return files

    def list_files(
        self,
        path_filter: Optional[Union[str, Pattern[str]]] = None,
        cache: Optional[ObjectCache] = None,
    ) -> List[Dict[str, Any]]:
        """Tracked files at the branch tip, sorted, with their correction status."""
        tree = self.store.read_commit(self.head_commit(), cache).tree
        corrected_ids = self._local_spellcheck_ids()
        pattern = re.compile(path_filter) if isinstance(path_filter, str) else path_filter
        result = []
        for entry in sorted(self._list_files(tree, "", cache), key=lambda e: e.name):
            if pattern is not None and not pattern.search(entry.name):
                continue
            result.append({"path": entry.name, "hasCorrection": entry.oid in corrected_ids})
        return result

    # ------------------------------------------------------------------
    # correction lookup

    def _local_spellcheck_ids(self) -> Set[str]:
        return {
            name[len(SPELLCHECK_PREFIX):] for name in self.store.list_refs(SPELLCHECK_PREFIX)
        }

    def get_correction_oid(
        self,
        path: str,
        depth: int = 0,
        cache: Optional[ObjectCache] = None,
    ) -> str:
        """
        Correction commit for the content `path` had `depth` first-parent
        commits before the branch tip.
        """
        if depth < 0:
            raise ValueError("depth must be >= 0")
        commit = self._walk_first_parents(self.head_commit(), depth, cache)
        if commit is None:
            raise ObjectNotFound(f"{self.branch}~{depth}", "commit")
        spellcheck_id = self.get_spellcheck_id(path, commit, cache)
        return self.store.resolve_ref(self.local_ref(spellcheck_id))

    def has_correction(self, path: str, depth: int = 0, cache: Optional[ObjectCache] = None) -> bool:
        try:
            self.get_correction_oid(path, depth, cache)
        except ObjectNotFound:
            return False
        return True

    def get_shortest_commit_depth(
        self,
        target: str,
        start: Optional[str] = None,
        cache: Optional[ObjectCache] = None,
    ) -> Optional[int]:
        """Minimum number of parent edges from `start` (branch tip) to `target`."""
        origin = start or self.head_commit()
        queue = deque([(origin, 0)])
        seen = {origin}
        while queue:
            commit, depth = queue.popleft()
            if commit == target:
                return depth
            for parent in self.store.read_commit(commit, cache).parents:
                if parent not in seen:
                    seen.add(parent)
                    queue.append((parent, depth + 1))
        return None

    def _find_nearest_correction(
        self,
        path: str,
        max_depth: Optional[int],
        cache: Optional[ObjectCache],
    ) -> Optional[Tuple[int, str]]:
        corrected_ids = self._local_spellcheck_ids()
        if not corrected_ids:
            return None
        origin = self.head_commit()
        queue = deque([(origin, 0)])
        seen = {origin}
        while queue:
            commit, depth = queue.popleft()
            try:
                spellcheck_id = self.get_spellcheck_id(path, commit, cache)
            except ObjectNotFound:
                spellcheck_id = None
            if spellcheck_id in corrected_ids:
                return depth, spellcheck_id
            if max_depth is not None and depth >= max_depth:
                continue
            for parent in self.store.read_commit(commit, cache).parents:
                if parent not in seen:
                    seen.add(parent)
                    queue.append((parent, depth + 1))
        return None

    def find_correction_depth(
        self,
        path: str,
        max_depth: Optional[int] = None,
        cache: Optional[ObjectCache] = None,
    ) -> Optional[int]:
        """Commit distance from the branch tip to the nearest corrected version of `path`."""
        found = self._find_nearest_correction(path, max_depth, cache)
        return found[0] if found else None

    def _resolve_correction_commit(self, spellcheck_id: str, ref_type: str) -> str:
        if ref_type == LOCAL:
            return self.store.resolve_ref(self.local_ref(spellcheck_id))
        if ref_type == REMOTE:
            return self.store.resolve_ref(self.remote_ref(spellcheck_id))
        if ref_type == COMMON_PARENT:
            local = self.store.resolve_ref(self.local_ref(spellcheck_id))
            remote = self.store.resolve_ref(self.remote_ref(spellcheck_id))
            base = self.store.find_merge_base(local, remote)
            if base is None:
                raise ObjectNotFound(f"merge-base {local} {remote}", "commit")
            return base
        raise ValueError(f"Unknown correction type: {ref_type!r}")

    def correction_tree(self, commit: str, cache: Optional[ObjectCache] = None) -> Dict[str, str]:
        tree = self.store.read_commit(commit, cache).tree
        return {entry.name: entry.oid for entry in self.store.read_tree(tree, cache)}

    def read_record(self, commit: str, cache: Optional[ObjectCache] = None) -> Record:
        """Migrated record stored in correction commit `commit`."""
        metadata_oid = self.correction_tree(commit, cache).get(METADATA_FILE)
        if metadata_oid is None:
            raise ObjectNotFound(f"{commit}:{METADATA_FILE}", "blob")
        result = load_record(self.store.read_blob(metadata_oid, cache))
        if result.kind is RecordKind.LEGACY:
            self._logger.info("Migrated legacy correction record from %s", commit)
        return result.record

    def get_correction(
        self,
        path: Optional[str] = None,
        spellcheck_id: Optional[str] = None,
        ref_type: str = LOCAL,
        depth: int = 0,
        cache: Optional[ObjectCache] = None,
        apply_dictionary: bool = True,
    ) -> Record:
        """
        Load a correction record.

        Exactly one of `path` (resolved at the branch tip) or
        `spellcheck_id` selects the content. `ref_type` picks the local ref,
        the remote-tracking ref, or their merge base; `depth` then walks
        that many first parents back along the correction history.
        """
        if (path is None) == (spellcheck_id is None):
            raise ValueError("Pass exactly one of path or spellcheck_id.")
        if depth < 0:
            raise ValueError("depth must be >= 0")
        if spellcheck_id is None:
            spellcheck_id = self.get_spellcheck_id(path, cache=cache)  # type: ignore[arg-type]

        commit = self._resolve_correction_commit(spellcheck_id, ref_type)
        walked = self._walk_first_parents(commit, depth, cache)
        if walked is None:
            raise ObjectNotFound(f"{commit}~{depth}", "commit")

        record = self.read_record(walked, cache)
        if apply_dictionary:
            record = filter_dictionary_words(record, self.dictionary_words(cache))
        return record

    def try_get_correction(
        self,
        path: str,
        cache: Optional[ObjectCache] = None,
        apply_dictionary: bool = True,
    ) -> Optional[Record]:
        try:
            return self.get_correction(path=path, cache=cache, apply_dictionary=apply_dictionary)
        except ObjectNotFound:
            return None

    def get_or_create_metadata(
        self,
        path: str,
        max_depth: Optional[int] = None,
        cache: Optional[ObjectCache] = None,
    ) -> Record:
        """
        Record for the current content of `path`, ready to be mutated and
        passed back to `correct_text`.

        New content is seeded from the nearest earlier correction of the
        same file. The returned record is never dictionary-filtered.
        """
        existing = self.try_get_correction(path, cache=cache, apply_dictionary=False)
        if existing is not None:
            return existing

        paragraphs = split_paragraphs(self.get_text(path, cache=cache))
        previous: Optional[Record] = None
        nearest = self._find_nearest_correction(path, max_depth, cache)
        if nearest is not None:
            depth, spellcheck_id = nearest
            try:
                previous = self.get_correction(
                    spellcheck_id=spellcheck_id, cache=cache, apply_dictionary=False
                )
                self._logger.info("Seeding %s from correction %d commits back", path, depth)
            except CorruptRecordError as exc:
                self._logger.warning("Not seeding %s from corrupt record %s: %s", path, spellcheck_id, exc)
        return seed_record(paragraphs, previous)

    # ------------------------------------------------------------------
    # writes

    def correct_text(
        self,
        path: Optional[str],
        metadata: Record,
        commit_spec: Optional[CommitSpec] = None,
        mode: str = FILE_CHANGE,
        spellcheck_id: Optional[str] = None,
    ) -> str:
        """
        Store `metadata` as the newest correction for the content of `path`.

        Returns the new correction commit. The local ref is force-updated
        and then force-pushed when a remote is configured; a crash between
        the two is repaired by the next sync.
        """
        if mode not in (FILE_CHANGE, MERGE):
            raise ValueError(f"Unknown correction mode: {mode!r}")
        if spellcheck_id is None:
            if path is None:
                raise ValueError("correct_text needs a path or a spellcheck_id.")
            spellcheck_id = self.get_spellcheck_id(path)

        paragraphs = metadata.get("paragraphInfo", [])
        if mode == FILE_CHANGE:
            expected = split_paragraphs(self.store.read_blob(spellcheck_id).decode("utf-8"))
            if len(paragraphs) != len(expected):
                raise ValueError(
                    f"Record has {len(paragraphs)} paragraphs but content {spellcheck_id} has {len(expected)}."
                )
            # a record is only valid for the exact content it was computed against
            for idx, (entry, text) in enumerate(zip(paragraphs, expected)):
                if entry.get("original") != text:
                    raise ValueError(
                        f"Paragraph {idx} of the record does not match content {spellcheck_id}."
                    )

        corrected = build_corrected_text(metadata)
        correction_oid = self.store.write_blob(corrected.encode("utf-8"))
        metadata_oid = self.store.write_blob(encode_record(metadata))
        tree = self.store.write_tree(
            [
                TreeEntry(BLOB_MODE, "blob", correction_oid, CORRECTION_FILE),
                TreeEntry(BLOB_MODE, "blob", metadata_oid, METADATA_FILE),
                TreeEntry(BLOB_MODE, "blob", spellcheck_id, ORIGINAL_FILE),
            ]
        )

        ref = self.local_ref(spellcheck_id)
        previous = self.store.try_resolve_ref(ref)
        if mode == FILE_CHANGE:
            parents = [previous] if previous else [self.head_commit()]
            done, total = record_progress(metadata)
            message = f"Correct {path} {done}/{total} {int(metadata.get('timeSpentMs', 0))}"
        else:
            remote = self.store.resolve_ref(self.remote_ref(spellcheck_id))
            if previous is None:
                raise ObjectNotFound(ref, "ref")
            parents = [previous, remote]
            message = f"Merge {path}" if path else f"Merged {spellcheck_id}"

        spec = commit_spec or CommitSpec()
        if spec.message:
            message = f"{message}\n\n{spec.message}"
        commit = self.store.write_commit(
            tree,
            parents,
            message,
            author=spec.author or self.author,
            committer=spec.committer,
        )
        self.store.write_ref(ref, commit, force=True)
        self._logger.info("%s -> %s", message.splitlines()[0], commit)

        if self.push_enabled:
            self.store.push(ref, force=True)
        return commit

    def _rewrite_tree(self, tree: Optional[str], segments: List[str], blob: str) -> str:
        entries = self.store.read_tree(tree) if tree else []
        name = segments[0]
        existing = next((e for e in entries if e.name == name), None)
        siblings = [e for e in entries if e.name != name]

        if len(segments) == 1:
            if existing is not None and existing.is_tree:
                raise ValueError(f"Cannot replace directory {name!r} with a file.")
            mode = existing.mode if existing is not None else BLOB_MODE
            replacement = TreeEntry(mode, "blob", blob, name)
        else:
            if existing is not None and not existing.is_tree:
                raise ValueError(f"Cannot descend into file {name!r}.")
            subtree = self._rewrite_tree(existing.oid if existing else None, segments[1:], blob)
            replacement = TreeEntry(TREE_MODE, "tree", subtree, name)

        return self.store.write_tree(siblings + [replacement])

    def set_text(self, path: str, new_text: str, commit_spec: Optional[CommitSpec] = None) -> str:
        """
        Commit new content for one tracked file on the main branch.

        Only for out-of-band edits such as the dictionary; correction data
        never goes through here. The branch moves without force.
        """
        if path.startswith("/") or path.endswith("/") or not path:
            raise ValueError(f"Path must be relative without leading or trailing slash: {path!r}")
        head = self.head_commit()
        root = self.store.read_commit(head).tree
        blob = self.store.write_blob(new_text.encode("utf-8"))
        new_root = self._rewrite_tree(root, path.split("/"), blob)

        spec = commit_spec or CommitSpec()
        commit = self.store.write_commit(
            new_root,
            [head],
            spec.message or f"Update {path}",
            author=spec.author or self.author,
            committer=spec.committer,
        )
        self.store.write_ref(self.branch_ref, commit, force=False)
        self._logger.info("Updated %s on %s -> %s", path, self.branch, commit)

        if self.push_enabled:
            self.store.push(self.branch_ref, force=False)
        return commit

    # ------------------------------------------------------------------
    # reviews

    @staticmethod
    def review_ref(review_id: str) -> str:
        return f"{REVIEW_PREFIX}{review_id}"

    def add_review(
        self,
        review: Dict[str, Any],
        path: str,
        commit_spec: Optional[CommitSpec] = None,
    ) -> str:
        """
        Store a free-form review of the current content of `path` under
        `refs/reviews/<id>` and return the id.

        The commit tree pins the reviewed blob as `target`, so the review
        stays attached to the exact text it was written for. A missing id is
        generated; an existing review with the same id is replaced. Reviews
        live in this clone only.
        """
        document = deepcopy(review)
        review_id = document.setdefault("id", str(uuid4()))
        if not isinstance(review_id, str) or not review_id.strip() or "/" in review_id:
            raise ValueError(f"Review id must be a non-empty name without '/': {review_id!r}")
        ok, errors = validate_review(document)
        if not ok:
            raise ValueError("Invalid review: " + "; ".join(errors))

        target = self.get_spellcheck_id(path)
        review_oid = self.store.write_blob(encode_record(document))
        tree = self.store.write_tree(
            [
                TreeEntry(BLOB_MODE, "blob", review_oid, REVIEW_FILE),
                TreeEntry(BLOB_MODE, "blob", target, TARGET_FILE),
            ]
        )
        spec = commit_spec or CommitSpec()
        commit = self.store.write_commit(
            tree,
            [self.head_commit()],
            spec.message or "Add review",
            author=spec.author or self.author,
            committer=spec.committer,
        )
        self.store.write_ref(self.review_ref(review_id), commit, force=True)
        self._logger.info("Stored review %s for %s -> %s", review_id, path, commit)
        return review_id

    def _review_tree(self, review_id: str, cache: Optional[ObjectCache]) -> Dict[str, str]:
        commit = self.store.resolve_ref(self.review_ref(review_id))
        return self.correction_tree(commit, cache)

    def get_review(self, review_id: str, cache: Optional[ObjectCache] = None) -> Dict[str, Any]:
        files = self._review_tree(review_id, cache)
        if REVIEW_FILE not in files:
            raise ObjectNotFound(f"{self.review_ref(review_id)}:{REVIEW_FILE}", "blob")
        try:
            document = json.loads(self.store.read_blob(files[REVIEW_FILE], cache).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptRecordError(f"Stored review {review_id} is not valid JSON: {exc}") from exc
        ok, errors = validate_review(document)
        if not ok:
            raise CorruptRecordError(f"Stored review {review_id} is invalid", current_errors=errors)
        return document

    def get_review_target(self, review_id: str, cache: Optional[ObjectCache] = None) -> str:
        """Blob OID of the content the review was written for."""
        files = self._review_tree(review_id, cache)
        if TARGET_FILE not in files:
            raise ObjectNotFound(f"{self.review_ref(review_id)}:{TARGET_FILE}", "blob")
        return files[TARGET_FILE]

    def list_reviews(self, cache: Optional[ObjectCache] = None) -> List[Dict[str, Any]]:
        """Every stored review, ordered by id."""
        ids = sorted(name[len(REVIEW_PREFIX):] for name in self.store.list_refs(REVIEW_PREFIX))
        return [self.get_review(review_id, cache) for review_id in ids]

    # ------------------------------------------------------------------
    # dictionary

    def dictionary_words(self, cache: Optional[ObjectCache] = None) -> Set[str]:
        try:
            text = self.get_text(self.dictionary_path, cache=cache)
        except ObjectNotFound:
            return set()
        return {
            line.strip()
            for line in text.splitlines()
            if line.strip() and not line.strip().startswith("#")
        }

    def add_word_to_dictionary(self, word: str, commit_spec: Optional[CommitSpec] = None) -> Optional[str]:
        """Append `word` to the dictionary file; returns `None` when already listed."""
        word = word.strip()
        if not word or any(ch.isspace() for ch in word):
            raise ValueError(f"Dictionary entries must be single words: {word!r}")
        try:
            text = self.get_text(self.dictionary_path)
        except ObjectNotFound:
            text = ""
        known = {line.strip().casefold() for line in text.splitlines()}
        if word.casefold() in known:
            return None
        if text and not text.endswith("\n"):
            text += "\n"
        spec = commit_spec or CommitSpec(message=f"Add {word} to dictionary")
        return self.set_text(self.dictionary_path, f"{text}{word}\n", spec)
