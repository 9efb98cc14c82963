from __future__ import annotations

import hashlib
from collections import deque
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

from correction_store.errors import NetworkError, ObjectNotFound, PushRejected, RefConflict
from correction_store.object_store import (
    BLOB_MODE,
    TREE_MODE,
    Commit,
    ObjectCache,
    Signature,
    TreeEntry,
)


TEST_AUTHOR = Signature("Test Author", "author@example.com", 1700000000, "+0000")


def git_blob_oid(data: bytes) -> str:
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


class FakeObjectStore:
    """In-memory stand-in for `GitObjectStore`, optionally linked to a fake remote."""

    def __init__(
        self,
        remote_store: Optional["FakeObjectStore"] = None,
        remote_url: Optional[str] = None,
        remote: str = "origin",
        initialized: bool = True,
    ) -> None:
        self.git_dir = Path("/fake/repo.git")
        self.remote = remote
        self.remote_store = remote_store
        self.remote_url = remote_url if remote_url is not None else ("fake://remote" if remote_store else None)
        self.initialized = initialized
        self.offline = False
        self.reject_pushes = False

        self.blobs: Dict[str, bytes] = {}
        self.trees: Dict[str, List[TreeEntry]] = {}
        self.commits: Dict[str, Commit] = {}
        self.refs: Dict[str, str] = {}

        self.calls: Dict[str, int] = {
            "read_blob": 0,
            "read_tree": 0,
            "read_commit": 0,
            "fetch": 0,
            "push": 0,
        }
        self.pushed: List[str] = []

    # ------------------------------------------------------------------
    # repository lifecycle

    def exists(self) -> bool:
        return self.initialized

    def clone_from(self, url: str) -> None:
        source = self._network()
        self._copy_objects(source)
        for name, oid in source.refs.items():
            if name.startswith("refs/heads/"):
                self.refs[name] = oid
        self.remote_url = url
        self.initialized = True

    def has_remote(self) -> bool:
        return self.remote_url is not None and self.remote_store is not None

    def add_remote(self, url: str) -> None:
        self.remote_url = url

    # ------------------------------------------------------------------
    # objects

    def read_blob(self, oid: str, cache: Optional[ObjectCache] = None) -> bytes:
        if cache is not None and oid in cache.blobs:
            return cache.blobs[oid]
        self.calls["read_blob"] += 1
        if oid not in self.blobs:
            raise ObjectNotFound(oid, "blob")
        if cache is not None:
            cache.blobs[oid] = self.blobs[oid]
        return self.blobs[oid]

    def write_blob(self, data: bytes) -> str:
        oid = git_blob_oid(data)
        self.blobs[oid] = bytes(data)
        return oid

    def read_tree(self, oid: str, cache: Optional[ObjectCache] = None) -> List[TreeEntry]:
        if cache is not None and oid in cache.trees:
            return list(cache.trees[oid])
        self.calls["read_tree"] += 1
        if oid not in self.trees:
            raise ObjectNotFound(oid, "tree")
        if cache is not None:
            cache.trees[oid] = list(self.trees[oid])
        return list(self.trees[oid])

    def write_tree(self, entries: Iterable[TreeEntry]) -> str:
        ordered = sorted(entries, key=lambda e: e.name)
        for entry in ordered:
            known = self.trees if entry.is_tree else self.blobs
            if entry.oid not in known:
                raise OSError(f"mktree: missing object {entry.oid}")
        payload = "\n".join(f"{e.mode} {e.type} {e.oid}\t{e.name}" for e in ordered)
        oid = hashlib.sha1(b"tree " + payload.encode("utf-8")).hexdigest()
        self.trees[oid] = ordered
        return oid

    def read_commit(self, oid: str, cache: Optional[ObjectCache] = None) -> Commit:
        if cache is not None and oid in cache.commits:
            return cache.commits[oid]
        self.calls["read_commit"] += 1
        if oid not in self.commits:
            raise ObjectNotFound(oid, "commit")
        if cache is not None:
            cache.commits[oid] = self.commits[oid]
        return self.commits[oid]

    def write_commit(
        self,
        tree: str,
        parents: Sequence[str],
        message: str,
        author: Signature,
        committer: Optional[Signature] = None,
    ) -> str:
        if tree not in self.trees:
            raise OSError(f"commit-tree: missing tree {tree}")
        author = author.stamped()
        committer = (committer or author).stamped()
        payload = repr((tree, tuple(parents), message, author, committer))
        oid = hashlib.sha1(b"commit " + payload.encode("utf-8")).hexdigest()
        self.commits[oid] = Commit(oid, tree, tuple(parents), author, committer, message)
        return oid

    # ------------------------------------------------------------------
    # refs

    def resolve_ref(self, name: str) -> str:
        if name not in self.refs:
            raise ObjectNotFound(name, "ref")
        return self.refs[name]

    def try_resolve_ref(self, name: str) -> Optional[str]:
        return self.refs.get(name)

    def write_ref(self, name: str, oid: str, force: bool = False) -> None:
        current = self.refs.get(name)
        if not force and current is not None and current != oid and not self.is_ancestor(current, oid):
            raise RefConflict(name, current, oid)
        self.refs[name] = oid

    def list_refs(self, prefix: str) -> Dict[str, str]:
        base = prefix.rstrip("/") + "/"
        return {name: oid for name, oid in self.refs.items() if name.startswith(base)}

    # ------------------------------------------------------------------
    # network

    def _network(self) -> "FakeObjectStore":
        if self.offline or self.remote_store is None:
            raise NetworkError("remote unreachable")
        return self.remote_store

    def _copy_objects(self, source: "FakeObjectStore") -> None:
        self.blobs.update(source.blobs)
        self.trees.update(source.trees)
        self.commits.update(source.commits)

    def list_remote_refs(self, prefix: str) -> Dict[str, str]:
        return self._network().list_refs(prefix)

    def fetch(self, refspecs: Sequence[str]) -> None:
        source = self._network()
        self.calls["fetch"] += 1
        self._copy_objects(source)
        for spec in refspecs:
            src, _, dst = spec.lstrip("+").partition(":")
            if src.endswith("*"):
                src_prefix, dst_prefix = src[:-1], dst[:-1]
                for name, oid in source.refs.items():
                    if name.startswith(src_prefix):
                        self.refs[dst_prefix + name[len(src_prefix):]] = oid
            elif src in source.refs:
                self.refs[dst] = source.refs[src]
            else:
                raise NetworkError(f"couldn't find remote ref {src}")

    def push(self, ref: str, force: bool = False) -> None:
        target = self._network()
        self.calls["push"] += 1
        oid = self.resolve_ref(ref)
        target._copy_objects(self)
        current = target.refs.get(ref)
        if self.reject_pushes or (
            not force and current is not None and current != oid and not target.is_ancestor(current, oid)
        ):
            raise PushRejected(ref, "non-fast-forward")
        target.refs[ref] = oid
        self.pushed.append(ref)

    # ------------------------------------------------------------------
    # history

    def _ancestors(self, oid: str) -> Set[str]:
        seen = {oid}
        queue = deque([oid])
        while queue:
            for parent in self.commits[queue.popleft()].parents:
                if parent not in seen:
                    seen.add(parent)
                    queue.append(parent)
        return seen

    def find_merge_base(self, a: str, b: str) -> Optional[str]:
        if a not in self.commits or b not in self.commits:
            raise ObjectNotFound(f"{a}..{b}", "commit")
        mine = self._ancestors(a)
        seen = {b}
        queue = deque([b])
        while queue:
            current = queue.popleft()
            if current in mine:
                return current
            for parent in self.commits[current].parents:
                if parent not in seen:
                    seen.add(parent)
                    queue.append(parent)
        return None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        if ancestor not in self.commits or descendant not in self.commits:
            raise ObjectNotFound(f"{ancestor}..{descendant}", "commit")
        return ancestor in self._ancestors(descendant)


def _write_nested_tree(store, files: Dict[str, str]) -> str:
    entries: List[TreeEntry] = []
    directories: Dict[str, Dict[str, str]] = {}
    for path, content in files.items():
        head, sep, rest = path.partition("/")
        if sep:
            directories.setdefault(head, {})[rest] = content
        else:
            entries.append(TreeEntry(BLOB_MODE, "blob", store.write_blob(content.encode("utf-8")), head))
    for name, nested in directories.items():
        entries.append(TreeEntry(TREE_MODE, "tree", _write_nested_tree(store, nested), name))
    return store.write_tree(entries)


def commit_files(
    store,
    files: Dict[str, str],
    message: str = "Update story",
    branch: str = "main",
    parents: Optional[Sequence[str]] = None,
    timestamp: Optional[int] = None,
) -> str:
    """Commit a full snapshot of `files` onto `branch` (works on any store)."""
    ref = f"refs/heads/{branch}"
    if parents is None:
        tip = store.try_resolve_ref(ref)
        parents = [tip] if tip else []
    tree = _write_nested_tree(store, files)
    author = Signature(TEST_AUTHOR.name, TEST_AUTHOR.email, timestamp or TEST_AUTHOR.timestamp)
    commit = store.write_commit(tree, list(parents), message, author=author)
    store.write_ref(ref, commit, force=True)
    return commit


def linked_pair(files: Optional[Dict[str, str]] = None):
    """A fake remote with an initial commit, and a local clone of it."""
    remote = FakeObjectStore()
    if files is not None:
        commit_files(remote, files, message="Initial story")
    local = FakeObjectStore(remote_store=remote, remote_url="fake://remote", initialized=False)
    local.clone_from("fake://remote")
    return local, remote
