"""
In-memory backend adapter.

A deterministic stand-in for a git repository, used to exercise the
synchronization protocol without spawning processes.

Models:
- History commits with parents and committer timestamps (note keys)
- Notes commits: immutable snapshots of key -> content with parents
- Refs pointing at notes commits, HEAD pointing at a history commit
- Remotes: other InMemoryAdapter instances reached by name

Diagnostics mimic git's wording so the error classifier sees the same
text from both adapters.
"""

import hashlib
import itertools
import re
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .adapter import (
    AfterObserver,
    BackendAdapter,
    BackendOperation,
    BeforeObserver,
    CallContext,
    CommandResult,
)

# Timestamp of the first commit created without an explicit one
BASE_TIMESTAMP = 1_700_000_000

_object_counter = itertools.count(1)
_REVISION_SUFFIX = re.compile(r"^(?P<base>.+?)(?P<suffix>(?:~\d*|\^)+)$")
_HEX = re.compile(r"^[0-9a-f]{4,40}$")


def _new_oid(kind: str, payload: str) -> str:
    seed = f"{kind}:{next(_object_counter)}:{payload}"
    return hashlib.sha1(seed.encode("utf-8")).hexdigest()


def _blob_oid(content: str) -> str:
    data = content.encode("utf-8", "surrogateescape")
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


@dataclass(frozen=True)
class HistoryCommit:
    oid: str
    parents: Tuple[str, ...]
    timestamp: int
    message: str = ""


@dataclass(frozen=True)
class NotesCommit:
    oid: str
    parents: Tuple[str, ...]
    notes: Mapping[str, str] = field(default_factory=dict)


def combine_cat_sort_uniq(local: Optional[str], remote: Optional[str]) -> Optional[str]:
    """Concatenate both sides, sort lines, drop duplicates."""
    lines = set()
    for content in (local, remote):
        if content:
            lines.update(line for line in content.splitlines() if line)
    if not lines:
        return None
    return "".join(f"{line}\n" for line in sorted(lines))


def combine_union(local: Optional[str], remote: Optional[str]) -> Optional[str]:
    if local and remote:
        return local.rstrip("\n") + "\n" + remote
    return local or remote


_COMBINERS = {
    "cat_sort_uniq": combine_cat_sort_uniq,
    "union": combine_union,
    "ours": lambda local, remote: local,
    "theirs": lambda local, remote: remote,
}


class InMemoryAdapter(BackendAdapter):
    """
    Fake repository implementing the backend capability set.

    Thread-safe: bulk reads may call it from several workers.
    """

    def __init__(
        self,
        remotes: Optional[Mapping[str, "InMemoryAdapter"]] = None,
        before: Optional[Iterable[BeforeObserver]] = None,
        after: Optional[Iterable[AfterObserver]] = None,
    ):
        super().__init__(before=before, after=after)
        self.remotes: Dict[str, "InMemoryAdapter"] = dict(remotes or {})
        self.commits: Dict[str, HistoryCommit] = {}
        self.notes_commits: Dict[str, NotesCommit] = {}
        self.refs: Dict[str, str] = {}
        self.head: Optional[str] = None
        self.merges_in_progress: Dict[str, Tuple[str, str]] = {}
        self._clock = BASE_TIMESTAMP
        self._lock = threading.RLock()

    # =========================================================================
    # Test helpers
    # =========================================================================

    @classmethod
    def clone(cls, source: "InMemoryAdapter", remote_name: str = "origin", **kwargs) -> "InMemoryAdapter":
        """Copy the history of source and register it as a remote."""
        adapter = cls(remotes={remote_name: source}, **kwargs)
        with source._lock:
            adapter.commits.update(source.commits)
            adapter.head = source.head
            adapter._clock = source._clock
        return adapter

    def add_remote(self, name: str, remote: "InMemoryAdapter") -> None:
        self.remotes[name] = remote

    def commit(self, message: str = "", timestamp: Optional[int] = None) -> str:
        """Create a history commit on top of HEAD and return its hash."""
        with self._lock:
            if timestamp is None:
                self._clock += 1
                timestamp = self._clock
            else:
                self._clock = max(self._clock, timestamp)
            parents = (self.head,) if self.head else ()
            oid = _new_oid("commit", message)
            self.commits[oid] = HistoryCommit(oid, parents, timestamp, message)
            self.head = oid
            return oid

    def notes_at(self, ref: str) -> Dict[str, str]:
        """Snapshot of the notes a ref currently points at."""
        with self._lock:
            oid = self.refs.get(ref)
            return dict(self.notes_commits[oid].notes) if oid else {}

    # =========================================================================
    # Internals (callers hold the lock)
    # =========================================================================

    def _resolve_base(self, expr: str) -> Optional[str]:
        if expr == "HEAD":
            return self.head
        if expr in self.refs:
            return self.refs[expr]
        if expr in self.commits or expr in self.notes_commits:
            return expr
        if _HEX.match(expr):
            matches = [oid for oid in itertools.chain(self.commits, self.notes_commits) if oid.startswith(expr)]
            if len(matches) == 1:
                return matches[0]
        return None

    def _parents(self, oid: str) -> Tuple[str, ...]:
        if oid in self.commits:
            return self.commits[oid].parents
        if oid in self.notes_commits:
            return self.notes_commits[oid].parents
        return ()

    def _resolve(self, expr: str) -> Optional[str]:
        match = _REVISION_SUFFIX.match(expr)
        if not match:
            return self._resolve_base(expr)
        oid = self._resolve_base(match.group("base"))
        for step in re.findall(r"~\d*|\^", match.group("suffix")):
            count = 1 if step in ("~", "^") else int(step[1:])
            for _ in range(count):
                if oid is None:
                    return None
                parents = self._parents(oid)
                oid = parents[0] if parents else None
        return oid

    def _resolve_commit(self, expr: str) -> Optional[str]:
        oid = self._resolve(expr)
        return oid if oid in self.commits else None

    def _ancestors(self, oid: str) -> set:
        seen = set()
        stack = [oid]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._parents(current))
        return seen

    def _is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return ancestor in self._ancestors(descendant)

    def _merge_base(self, a: str, b: str) -> Optional[str]:
        common = self._ancestors(a) & self._ancestors(b)
        # Nearest common ancestor: one that is not an ancestor of another common one
        for oid in common:
            if not any(oid != other and self._is_ancestor(oid, other) for other in common):
                return oid
        return None

    def _new_notes_commit(self, parents: Sequence[str], notes: Mapping[str, str]) -> str:
        oid = _new_oid("notes", ",".join(parents))
        self.notes_commits[oid] = NotesCommit(oid, tuple(parents), MappingProxyType(dict(notes)))
        return oid

    def _current_notes(self, ref: str) -> Dict[str, str]:
        oid = self.refs.get(ref)
        return dict(self.notes_commits[oid].notes) if oid else {}

    def _absorb_objects(self, other: "InMemoryAdapter") -> None:
        self.commits.update(other.commits)
        self.notes_commits.update(other.notes_commits)

    @staticmethod
    def _missing_remote(remote: str) -> CommandResult:
        return CommandResult(
            128,
            "",
            f"fatal: '{remote}' does not appear to be a git repository\n"
            "fatal: Could not read from remote repository.",
        )

    # =========================================================================
    # Capabilities
    # =========================================================================

    def resolve_revision(self, expr: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                oid = self._resolve(expr)
            if oid is None:
                return CommandResult(128, "", "fatal: Needed a single revision")
            return CommandResult(0, oid)

        return self._call(BackendOperation.RESOLVE_REVISION, [expr], ctx, run)

    def read_note(self, ref: str, key: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                oid = self._resolve_commit(key)
                if oid is None:
                    return CommandResult(128, "", f"fatal: failed to resolve '{key}' as a valid ref.")
                notes = self._current_notes(ref)
            if oid not in notes:
                return CommandResult(1, "", f"error: no note found for object {oid}.")
            return CommandResult(0, notes[oid])

        return self._call(BackendOperation.READ_NOTE, [ref, key], ctx, run)

    def write_note(
        self, ref: str, key: str, content: str, ctx: Optional[CallContext] = None
    ) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                oid = self._resolve_commit(key)
                if oid is None:
                    return CommandResult(128, "", f"fatal: failed to resolve '{key}' as a valid ref.")
                notes = self._current_notes(ref)
                notes[oid] = content
                parents = [self.refs[ref]] if ref in self.refs else []
                self.refs[ref] = self._new_notes_commit(parents, notes)
            return CommandResult(0)

        return self._call(BackendOperation.WRITE_NOTE, [ref, key], ctx, run)

    def remove_note(self, ref: str, key: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                oid = self._resolve_commit(key)
                if oid is None:
                    return CommandResult(128, "", f"fatal: failed to resolve '{key}' as a valid ref.")
                notes = self._current_notes(ref)
                if oid not in notes:
                    return CommandResult(1, "", f"error: Object {oid} has no note")
                del notes[oid]
                self.refs[ref] = self._new_notes_commit([self.refs[ref]], notes)
            return CommandResult(0, "", f"Removing note for object {oid}")

        return self._call(BackendOperation.REMOVE_NOTE, [ref, key], ctx, run)

    def list_note_keys(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                notes = self._current_notes(ref)
            lines = [f"{_blob_oid(content)} {key}" for key, content in sorted(notes.items())]
            return CommandResult(0, "\n".join(lines))

        return self._call(BackendOperation.LIST_NOTE_KEYS, [ref], ctx, run)

    def batch_get_timestamps(
        self, keys: Sequence[str], ctx: Optional[CallContext] = None
    ) -> CommandResult:
        def run() -> CommandResult:
            lines: List[str] = []
            with self._lock:
                for key in keys:
                    oid = self._resolve_commit(key)
                    if oid is None:
                        continue  # Commit not present locally
                    lines.append(f"{oid} {self.commits[oid].timestamp}")
            return CommandResult(0, "\n".join(lines))

        return self._call(BackendOperation.BATCH_GET_TIMESTAMPS, list(keys), ctx, run)

    def fetch_ref(
        self,
        remote: str,
        remote_ref: str,
        local_ref: str,
        force: bool = False,
        ctx: Optional[CallContext] = None,
    ) -> CommandResult:
        def run() -> CommandResult:
            source = self.remotes.get(remote)
            if source is None:
                return self._missing_remote(remote)
            with source._lock:
                fetched = source.refs.get(remote_ref)
                with self._lock:
                    self._absorb_objects(source)
            if fetched is None:
                return CommandResult(128, "", f"fatal: couldn't find remote ref {remote_ref}")
            with self._lock:
                current = self.refs.get(local_ref)
                if current and not force and not self._is_ancestor(current, fetched):
                    return CommandResult(
                        1,
                        "",
                        f" ! [rejected]        {remote_ref} -> {local_ref}  (non-fast-forward)",
                    )
                self.refs[local_ref] = fetched
            return CommandResult(0)

        args = [remote, f"{remote_ref}:{local_ref}"]
        if force:
            args.insert(0, "--force")
        return self._call(BackendOperation.FETCH_REF, args, ctx, run)

    def fetch_objects(
        self, remote: str, object_ids: Sequence[str], ctx: Optional[CallContext] = None
    ) -> CommandResult:
        def run() -> CommandResult:
            source = self.remotes.get(remote)
            if source is None:
                return self._missing_remote(remote)
            with source._lock:
                missing = [oid for oid in object_ids if oid not in source.commits]
                with self._lock:
                    self._absorb_objects(source)
            if missing:
                return CommandResult(
                    128, "", f"fatal: remote error: upload-pack: not our ref {missing[0]}"
                )
            return CommandResult(0)

        return self._call(BackendOperation.FETCH_OBJECTS, [remote, *object_ids], ctx, run)

    def push_ref(self, remote: str, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            target = self.remotes.get(remote)
            if target is None:
                return self._missing_remote(remote)
            with self._lock:
                local = self.refs.get(ref)
            if local is None:
                return CommandResult(1, "", f"error: src refspec {ref} does not match any")
            with target._lock:
                with self._lock:
                    target._absorb_objects(self)
                current = target.refs.get(ref)
                if current and current != local and not target._is_ancestor(current, local):
                    return CommandResult(
                        1,
                        "",
                        f" ! [rejected]        {ref} -> {ref} (fetch first)\n"
                        f"error: failed to push some refs to '{remote}'\n"
                        "hint: Updates were rejected because the remote contains work that you do\n"
                        "hint: not have locally.",
                    )
                target.refs[ref] = local
            return CommandResult(0)

        return self._call(BackendOperation.PUSH_REF, [remote, f"{ref}:{ref}"], ctx, run)

    def merge_ref(
        self, ref: str, strategy: str, source_ref: str, ctx: Optional[CallContext] = None
    ) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                remote = self.refs.get(source_ref)
                if remote is None:
                    return CommandResult(128, "", f"fatal: failed to resolve remote notes ref '{source_ref}'")
                local = self.refs.get(ref)
                if local == remote or (local and self._is_ancestor(remote, local)):
                    return CommandResult(0, "Already up to date.")
                if local is None or self._is_ancestor(local, remote):
                    self.refs[ref] = remote
                    return CommandResult(0, "Fast-forward")
                return self._three_way_merge(ref, strategy, local, remote)

        return self._call(BackendOperation.MERGE_REF, [ref, strategy, source_ref], ctx, run)

    def _three_way_merge(self, ref: str, strategy: str, local: str, remote: str) -> CommandResult:
        base = self._merge_base(local, remote)
        base_notes = self.notes_commits[base].notes if base else {}
        local_notes = self.notes_commits[local].notes
        remote_notes = self.notes_commits[remote].notes

        merged: Dict[str, str] = {}
        conflicts: List[str] = []
        for key in sorted(set(base_notes) | set(local_notes) | set(remote_notes)):
            b, l, r = base_notes.get(key), local_notes.get(key), remote_notes.get(key)
            if l == r or r == b:
                value = l
            elif l == b:
                value = r
            else:
                combiner = _COMBINERS.get(strategy)
                if strategy == "manual":
                    conflicts.append(key)
                    continue
                if combiner is None:
                    return CommandResult(128, "", f"error: unknown -s/--strategy: {strategy}")
                value = combiner(l, r)
            if value is not None:
                merged[key] = value

        if conflicts:
            self.merges_in_progress[ref] = (local, remote)
            report = "\n".join(
                f"Auto-merging notes for {key}\nCONFLICT (content): Merge conflict in notes for object {key}"
                for key in conflicts
            )
            return CommandResult(
                1,
                report,
                "Automatic notes merge failed. Fix conflicts in .git/NOTES_MERGE_WORKTREE and commit "
                "the result with 'git notes merge --commit', or abort the merge with 'git notes merge --abort'.",
            )

        self.refs[ref] = self._new_notes_commit([local, remote], merged)
        return CommandResult(0, f"Merged notes from {remote} into {ref}")

    def abort_merge(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                self.merges_in_progress.pop(ref, None)
            return CommandResult(0)

        return self._call(BackendOperation.ABORT_MERGE, [ref], ctx, run)

    def update_ref(self, ref: str, object_id: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                if object_id not in self.notes_commits and object_id not in self.commits:
                    return CommandResult(128, "", f"fatal: {object_id}: not a valid SHA1")
                self.refs[ref] = object_id
            return CommandResult(0)

        return self._call(BackendOperation.UPDATE_REF, [ref, object_id], ctx, run)

    def delete_ref(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                self.refs.pop(ref, None)
            return CommandResult(0)

        return self._call(BackendOperation.DELETE_REF, [ref], ctx, run)

    def ref_exists(self, ref: str, ctx: Optional[CallContext] = None) -> bool:
        def run() -> CommandResult:
            with self._lock:
                return CommandResult(0 if ref in self.refs else 1)

        return self._call(BackendOperation.REF_EXISTS, [ref], ctx, run).ok

    def initialize_empty_ref(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        def run() -> CommandResult:
            with self._lock:
                self.refs[ref] = self._new_notes_commit([], {})
            return CommandResult(0)

        return self._call(BackendOperation.INITIALIZE_EMPTY_REF, [ref], ctx, run)

    def _call(self, operation, args, ctx, run) -> CommandResult:
        if ctx is not None:
            ctx.check(operation.value)
        return self._observed(operation, args, run)
