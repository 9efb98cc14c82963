"""
Thin adapter over git plumbing.

Writes follow the git data flow:
blob -> tree -> commit -> ref update

The adapter owns no policy. It never retries; a failed network operation
surfaces as `NetworkError` and the caller decides what to do next.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from correction_store.errors import NetworkError, ObjectNotFound, PushRejected, RefConflict


BLOB_MODE = "100644"
TREE_MODE = "040000"


@dataclass(frozen=True)
class TreeEntry:
    mode: str
    type: str
    oid: str
    name: str

    @property
    def is_tree(self) -> bool:
        return self.type == "tree"


@dataclass(frozen=True)
class Signature:
    name: str
    email: str
    timestamp: Optional[int] = None
    tz_offset: str = "+0000"

    def stamped(self) -> "Signature":
        if self.timestamp is not None:
            return self
        return Signature(self.name, self.email, int(time.time()), self.tz_offset)

    def git_date(self) -> str:
        return f"{self.stamped().timestamp} {self.tz_offset}"

    @classmethod
    def parse(cls, line: str) -> "Signature":
        """Parse `Name <email> 1700000000 +0100` as found in commit headers."""
        head, _, tail = line.rpartition(">")
        name, _, email = head.partition("<")
        parts = tail.split()
        timestamp = int(parts[0]) if parts else None
        tz_offset = parts[1] if len(parts) > 1 else "+0000"
        return cls(name.strip(), email.strip(), timestamp, tz_offset)


@dataclass(frozen=True)
class Commit:
    oid: str
    tree: str
    parents: Tuple[str, ...]
    author: Signature
    committer: Signature
    message: str


@dataclass
class ObjectCache:
    """Parsed objects for one logical operation. Never shared across passes."""

    blobs: Dict[str, bytes] = field(default_factory=dict)
    trees: Dict[str, List[TreeEntry]] = field(default_factory=dict)
    commits: Dict[str, Commit] = field(default_factory=dict)

    def clear(self) -> None:
        self.blobs.clear()
        self.trees.clear()
        self.commits.clear()


class GitObjectStore:
    """Git plumbing against a (bare) repository on disk via the git CLI."""

    def __init__(
        self,
        git_dir: Union[str, Path],
        remote: str = "origin",
        git_executable: str = "git",
        network_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.git_dir = Path(git_dir)
        self.remote = remote
        self.git_executable = git_executable
        self.network_timeout = network_timeout
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def clone(
        cls,
        url: str,
        git_dir: Union[str, Path],
        remote: str = "origin",
        git_executable: str = "git",
        network_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "GitObjectStore":
        """Bare-clone `url` into `git_dir`."""
        store = cls(git_dir, remote, git_executable, network_timeout, logger)
        store.clone_from(url)
        return store

    def clone_from(self, url: str) -> None:
        """Populate this (absent) repository with a bare clone of `url`."""
        self.git_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            result = subprocess.run(
                [
                    self.git_executable, "clone", "--bare", "--quiet",
                    "--origin", self.remote, url, str(self.git_dir),
                ],
                capture_output=True,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
                timeout=self.network_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise NetworkError(f"clone of {url} timed out") from exc
        if result.returncode != 0:
            raise NetworkError(f"clone of {url} failed: {_decode(result.stderr)}")
        self._logger.info("Cloned %s into %s", url, self.git_dir)

    @classmethod
    def init(
        cls,
        git_dir: Union[str, Path],
        initial_branch: str = "main",
        git_executable: str = "git",
        logger: Optional[logging.Logger] = None,
    ) -> "GitObjectStore":
        """Create an empty bare repository."""
        target = Path(git_dir)
        target.mkdir(parents=True, exist_ok=True)
        result = subprocess.run(
            [git_executable, "init", "--bare", "--quiet", str(target)],
            capture_output=True,
        )
        if result.returncode != 0:
            raise OSError(f"git init failed in {target}: {_decode(result.stderr)}")
        store = cls(target, git_executable=git_executable, logger=logger)
        store._git(["symbolic-ref", "HEAD", f"refs/heads/{initial_branch}"])
        return store

    def exists(self) -> bool:
        return (self.git_dir / "HEAD").exists()

    def has_remote(self) -> bool:
        return self._git(["remote", "get-url", self.remote], check=False).returncode == 0

    def add_remote(self, url: str) -> None:
        if self.has_remote():
            self._git(["remote", "set-url", self.remote, url])
        else:
            self._git(["remote", "add", self.remote, url])

    # ------------------------------------------------------------------
    # objects

    def read_blob(self, oid: str, cache: Optional[ObjectCache] = None) -> bytes:
        if cache is not None and oid in cache.blobs:
            return cache.blobs[oid]
        result = self._git(["cat-file", "blob", oid], check=False)
        if result.returncode != 0:
            raise ObjectNotFound(oid, "blob")
        if cache is not None:
            cache.blobs[oid] = result.stdout
        return result.stdout

    def write_blob(self, data: bytes) -> str:
        result = self._git(["hash-object", "-w", "--stdin"], input=data)
        return _decode(result.stdout).strip()

    def read_tree(self, oid: str, cache: Optional[ObjectCache] = None) -> List[TreeEntry]:
        if cache is not None and oid in cache.trees:
            return list(cache.trees[oid])
        result = self._git(["ls-tree", "-z", oid], check=False)
        if result.returncode != 0:
            raise ObjectNotFound(oid, "tree")
        entries: List[TreeEntry] = []
        for record in result.stdout.split(b"\0"):
            if not record:
                continue
            meta, _, name = record.partition(b"\t")
            mode, obj_type, obj_oid = _decode(meta).split(" ")
            entries.append(TreeEntry(mode, obj_type, obj_oid, _decode(name)))
        if cache is not None:
            cache.trees[oid] = list(entries)
        return entries

    def write_tree(self, entries: Iterable[TreeEntry]) -> str:
        payload = b"".join(
            f"{entry.mode} {entry.type} {entry.oid}\t{entry.name}".encode("utf-8") + b"\0"
            for entry in entries
        )
        result = self._git(["mktree", "-z"], input=payload)
        return _decode(result.stdout).strip()

    def read_commit(self, oid: str, cache: Optional[ObjectCache] = None) -> Commit:
        if cache is not None and oid in cache.commits:
            return cache.commits[oid]
        result = self._git(["cat-file", "commit", oid], check=False)
        if result.returncode != 0:
            raise ObjectNotFound(oid, "commit")
        commit = _parse_commit(oid, _decode(result.stdout))
        if cache is not None:
            cache.commits[oid] = commit
        return commit

    def write_commit(
        self,
        tree: str,
        parents: Sequence[str],
        message: str,
        author: Signature,
        committer: Optional[Signature] = None,
    ) -> str:
        author = author.stamped()
        committer = (committer or author).stamped()
        args = ["commit-tree", tree]
        for parent in parents:
            args.extend(["-p", parent])
        args.extend(["-F", "-"])
        env = {
            "GIT_AUTHOR_NAME": author.name,
            "GIT_AUTHOR_EMAIL": author.email,
            "GIT_AUTHOR_DATE": author.git_date(),
            "GIT_COMMITTER_NAME": committer.name,
            "GIT_COMMITTER_EMAIL": committer.email,
            "GIT_COMMITTER_DATE": committer.git_date(),
        }
        result = self._git(args, input=message.encode("utf-8"), env=env)
        return _decode(result.stdout).strip()

    # ------------------------------------------------------------------
    # refs

    def resolve_ref(self, name: str) -> str:
        result = self._git(["rev-parse", "--verify", "--quiet", name], check=False)
        oid = _decode(result.stdout).strip()
        if result.returncode != 0 or not oid:
            raise ObjectNotFound(name, "ref")
        return oid

    def try_resolve_ref(self, name: str) -> Optional[str]:
        try:
            return self.resolve_ref(name)
        except ObjectNotFound:
            return None

    def write_ref(self, name: str, oid: str, force: bool = False) -> None:
        current = self.try_resolve_ref(name)
        if not force and current is not None and current != oid and not self.is_ancestor(current, oid):
            raise RefConflict(name, current, oid)
        args = ["update-ref", name, oid]
        if not force:
            # compare-and-swap against the value we just checked
            args.append(current or "")
        result = self._git(args, check=False)
        if result.returncode != 0:
            raise RefConflict(name, current, oid)

    def list_refs(self, prefix: str) -> Dict[str, str]:
        result = self._git(
            ["for-each-ref", "--format=%(objectname) %(refname)", prefix.rstrip("/")]
        )
        return _parse_ref_listing(_decode(result.stdout), separator=" ")

    def list_remote_refs(self, prefix: str) -> Dict[str, str]:
        result = self._git(
            ["ls-remote", self.remote, f"{prefix.rstrip('/')}/*"],
            check=False,
            timeout=self.network_timeout,
        )
        if result.returncode != 0:
            raise NetworkError(f"ls-remote {self.remote} failed: {_decode(result.stderr)}")
        return _parse_ref_listing(_decode(result.stdout), separator="\t")

    # ------------------------------------------------------------------
    # network

    def fetch(self, refspecs: Sequence[str]) -> None:
        result = self._git(
            ["fetch", "--quiet", "--no-tags", self.remote, *refspecs],
            check=False,
            timeout=self.network_timeout,
        )
        if result.returncode != 0:
            raise NetworkError(f"fetch {' '.join(refspecs)} failed: {_decode(result.stderr)}")
        self._logger.debug("Fetched %s", ", ".join(refspecs))

    def push(self, ref: str, force: bool = False) -> None:
        refspec = f"{'+' if force else ''}{ref}:{ref}"
        result = self._git(
            ["push", "--porcelain", self.remote, refspec],
            check=False,
            timeout=self.network_timeout,
        )
        if result.returncode == 0:
            self._logger.debug("Pushed %s", refspec)
            return
        output = _decode(result.stdout) + _decode(result.stderr)
        if "[rejected]" in output or "non-fast-forward" in output or "fetch first" in output:
            raise PushRejected(ref, output.strip())
        raise NetworkError(f"push {refspec} failed: {output.strip()}")

    # ------------------------------------------------------------------
    # history

    def find_merge_base(self, a: str, b: str) -> Optional[str]:
        result = self._git(["merge-base", a, b], check=False)
        if result.returncode == 1:
            return None
        if result.returncode != 0:
            raise ObjectNotFound(f"{a}..{b}", "commit")
        return _decode(result.stdout).strip() or None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._git(["merge-base", "--is-ancestor", ancestor, descendant], check=False)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise ObjectNotFound(f"{ancestor}..{descendant}", "commit")

    # ------------------------------------------------------------------

    def _git(
        self,
        args: List[str],
        input: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        cmd = [self.git_executable, f"--git-dir={self.git_dir}", *args]
        full_env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", **(env or {})}
        try:
            result = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                env=full_env,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise NetworkError(f"git {args[0]} timed out after {timeout}s") from exc
        if check and result.returncode != 0:
            raise OSError(f"git {' '.join(args)} failed: {_decode(result.stderr).strip()}")
        return result


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _parse_ref_listing(text: str, separator: str) -> Dict[str, str]:
    refs: Dict[str, str] = {}
    for line in text.splitlines():
        oid, _, name = line.strip().partition(separator)
        if oid and name:
            refs[name.strip()] = oid.strip()
    return refs


def _parse_commit(oid: str, text: str) -> Commit:
    header, _, message = text.partition("\n\n")
    tree = ""
    parents: List[str] = []
    author = committer = Signature("", "")
    for line in header.splitlines():
        key, _, value = line.partition(" ")
        if key == "tree":
            tree = value
        elif key == "parent":
            parents.append(value)
        elif key == "author":
            author = Signature.parse(value)
        elif key == "committer":
            committer = Signature.parse(value)
    return Commit(oid, tree, tuple(parents), author, committer, message)
