"""
Annotation store.

CRUD over a single notes namespace: get / set / delete / list a note
keyed by commit ref.

Rules:
- Commit refs are validated before anything else; "" means current HEAD
- Size and format validation fail fast, before any backend call
- Refs are resolved at the point of use and never cached
- Every backend failure goes through the classifier; anything it does
  not recognise propagates as BackendCommandError
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .adapter import BackendAdapter, BackendOperation, CallContext, CommandResult
from .classifier import ErrorKind, classify
from .config import DEFAULT_SETTINGS, NoteStoreSettings
from .errors import (
    BackendCommandError,
    InvalidCommitRefError,
    NoteNotFoundError,
    NoteSizeExceededError,
)
from .refs import HEAD, format_namespace_ref, validate_commit_ref_format

logger = logging.getLogger(__name__)


class BaseNoteStore(ABC):
    """
    Interface of the annotation store.

    Cross-cutting wrappers (timing, tracing) implement this interface
    and delegate to another instance.
    """

    @abstractmethod
    def ref_for(self, namespace: str) -> str:
        pass

    @abstractmethod
    def get(self, namespace: str, commit_ref: str = "", ctx: Optional[CallContext] = None) -> str:
        pass

    @abstractmethod
    def set(
        self, namespace: str, commit_ref: str, content: str, ctx: Optional[CallContext] = None
    ) -> None:
        pass

    @abstractmethod
    def delete(self, namespace: str, commit_ref: str = "", ctx: Optional[CallContext] = None) -> None:
        pass

    @abstractmethod
    def list(self, namespace: str, ctx: Optional[CallContext] = None) -> List[str]:
        pass


def _parse_pairs(output: str) -> List[List[str]]:
    """Split "<a> <b>" lines, ignoring blank or short lines."""
    pairs = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            pairs.append(parts)
    return pairs


class NoteStore(BaseNoteStore):
    """
    Annotation store over a backend adapter.

    Stateless apart from its adapter and settings; safe to share
    between threads.
    """

    def __init__(self, adapter: BackendAdapter, settings: NoteStoreSettings = DEFAULT_SETTINGS):
        self.adapter = adapter
        self.settings = settings

    def ref_for(self, namespace: str) -> str:
        return format_namespace_ref(namespace)

    def validate_commit_ref(self, commit_ref: str) -> None:
        """Format check only; never calls the backend."""
        validate_commit_ref_format(commit_ref)

    def resolve(self, commit_ref: str, ctx: Optional[CallContext] = None) -> str:
        """
        Resolve a commit ref to a full hash.

        Raises:
            InvalidCommitRefError: If the ref is malformed or does not resolve
            BackendCommandError: For any other backend failure
        """
        validate_commit_ref_format(commit_ref)
        expr = commit_ref or HEAD
        result = self.adapter.resolve_revision(expr, ctx=ctx)
        if result.ok and result.stdout:
            return result.stdout.strip()
        if classify(BackendOperation.RESOLVE_REVISION, result) is ErrorKind.INVALID_COMMIT_REF:
            raise InvalidCommitRefError(commit_ref, result.stderr.strip() or None)
        raise self._unclassified(BackendOperation.RESOLVE_REVISION, result, f"Failed to resolve {expr}")

    def _target(self, commit_ref: str, ctx: Optional[CallContext]) -> str:
        """Object name handed to the backend for a commit ref."""
        if commit_ref == "" or self.settings.verify_commit_refs:
            return self.resolve(commit_ref, ctx=ctx)
        return commit_ref

    @staticmethod
    def _unclassified(
        operation: BackendOperation, result: CommandResult, message: str
    ) -> BackendCommandError:
        return BackendCommandError(operation.value, result.exit_status, result.stderr, message)

    # =========================================================================
    # Operations
    # =========================================================================

    def get(self, namespace: str, commit_ref: str = "", ctx: Optional[CallContext] = None) -> str:
        """
        Read the note attached to a commit.

        Raises:
            NoteNotFoundError: No note for this commit in the namespace
            InvalidCommitRefError: Malformed or unresolvable commit ref
            BackendCommandError: Any other backend failure
        """
        validate_commit_ref_format(commit_ref)
        ref = self.ref_for(namespace)
        target = self._target(commit_ref, ctx)

        result = self.adapter.read_note(ref, target, ctx=ctx)
        if result.ok:
            return result.stdout

        kind = classify(BackendOperation.READ_NOTE, result)
        if kind is ErrorKind.NOTE_NOT_FOUND:
            raise NoteNotFoundError(namespace, target, ref)
        if kind is ErrorKind.INVALID_COMMIT_REF:
            raise InvalidCommitRefError(commit_ref, result.stderr.strip() or None)
        raise self._unclassified(
            BackendOperation.READ_NOTE, result, f"Failed to get note for {target} in {ref}"
        )

    def set(
        self, namespace: str, commit_ref: str, content: str, ctx: Optional[CallContext] = None
    ) -> None:
        """
        Attach content to a commit, overwriting any existing note.

        Raises:
            NoteSizeExceededError: Content larger than max_note_size
                (raised before any backend call)
            InvalidCommitRefError: Malformed or unresolvable commit ref
            BackendCommandError: Any other backend failure
        """
        validate_commit_ref_format(commit_ref)
        size = len(content.encode("utf-8", "surrogateescape"))
        if size > self.settings.max_note_size:
            raise NoteSizeExceededError(size, self.settings.max_note_size)

        ref = self.ref_for(namespace)
        target = self._target(commit_ref, ctx)

        result = self.adapter.write_note(ref, target, content, ctx=ctx)
        if result.ok:
            logger.debug(f"[Store] Wrote {size} bytes to {target} in {ref}")
            return

        if classify(BackendOperation.WRITE_NOTE, result) is ErrorKind.INVALID_COMMIT_REF:
            raise InvalidCommitRefError(commit_ref, result.stderr.strip() or None)
        raise self._unclassified(
            BackendOperation.WRITE_NOTE, result, f"Failed to set note for {target} in {ref}"
        )

    def delete(self, namespace: str, commit_ref: str = "", ctx: Optional[CallContext] = None) -> None:
        """
        Remove the note attached to a commit.

        Idempotent: a commit without a note is not an error.
        """
        validate_commit_ref_format(commit_ref)
        ref = self.ref_for(namespace)
        target = self._target(commit_ref, ctx)

        result = self.adapter.remove_note(ref, target, ctx=ctx)
        if result.ok:
            return

        kind = classify(BackendOperation.REMOVE_NOTE, result)
        if kind is ErrorKind.DELETE_TARGET_MISSING:
            logger.debug(f"[Store] No note to delete for {target} in {ref}")
            return
        if kind is ErrorKind.INVALID_COMMIT_REF:
            raise InvalidCommitRefError(commit_ref, result.stderr.strip() or None)
        raise self._unclassified(
            BackendOperation.REMOVE_NOTE, result, f"Failed to delete note for {target} in {ref}"
        )

    def list(self, namespace: str, ctx: Optional[CallContext] = None) -> List[str]:
        """
        List every commit with a note in the namespace, newest first.

        Timestamps for all keys are fetched in one batched backend call.

        Returns:
            Commit hashes sorted by descending committer timestamp; an
            empty list when the namespace has no ref or no notes.
        """
        ref = self.ref_for(namespace)
        keys = self.list_keys(namespace, ctx=ctx)
        if not keys:
            return []

        result = self.adapter.batch_get_timestamps(keys, ctx=ctx)
        if not result.ok:
            raise self._unclassified(
                BackendOperation.BATCH_GET_TIMESTAMPS, result, f"Failed to get timestamps for notes in {ref}"
            )

        timestamps: Dict[str, int] = {}
        for oid, raw_timestamp in ((parts[0], parts[1]) for parts in _parse_pairs(result.stdout)):
            try:
                timestamps[oid] = int(raw_timestamp)
            except ValueError as e:
                raise BackendCommandError(
                    BackendOperation.BATCH_GET_TIMESTAMPS.value,
                    result.exit_status,
                    result.stdout,
                    f"Failed to parse timestamp for commit {oid}",
                ) from e

        missing = [key for key in keys if key not in timestamps]
        if missing:
            logger.warning(f"[Store] No timestamp for {len(missing)} key(s) in {ref}; listing them last")

        # Stable: equal timestamps keep the backend's listing order
        return sorted(keys, key=lambda key: timestamps.get(key, -1), reverse=True)

    def list_keys(self, namespace: str, ctx: Optional[CallContext] = None) -> List[str]:
        """Keys with a note in the namespace, in backend order."""
        ref = self.ref_for(namespace)
        result = self.adapter.list_note_keys(ref, ctx=ctx)
        if not result.ok:
            if classify(BackendOperation.LIST_NOTE_KEYS, result) is ErrorKind.NOTES_REF_NOT_FOUND:
                return []
            raise self._unclassified(BackendOperation.LIST_NOTE_KEYS, result, f"Failed to list notes in {ref}")

        keys: List[str] = []
        seen = set()
        for parts in _parse_pairs(result.stdout):
            key = parts[1]
            if key not in seen:
                seen.add(key)
                keys.append(key)
        return keys
