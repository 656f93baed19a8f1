"""
Note store errors.

Exception hierarchy for annotation storage, synchronization and decoding.

All errors inherit from NoteStoreError so callers can catch the whole
family, and each one keeps the context it was raised with (namespace,
commit ref, sizes, partial results) as attributes for programmatic use.
"""

from typing import Any, List, Optional


class NoteStoreError(Exception):
    """Base exception for all note store failures."""
    pass


class NoteNotFoundError(NoteStoreError):
    """Raised when no note is attached to the commit in the namespace."""

    def __init__(self, namespace: str, commit_ref: str, ref: Optional[str] = None):
        self.namespace = namespace
        self.commit_ref = commit_ref
        self.ref = ref
        super().__init__(
            f"Note not found for commit {commit_ref} in {ref or namespace}"
        )


class InvalidCommitRefError(NoteStoreError):
    """
    Raised when a commit ref is malformed or does not resolve.

    Covers both format rejection (leading dash, NUL byte) and refs the
    backend cannot resolve to an object.
    """

    def __init__(self, commit_ref: str, reason: Optional[str] = None):
        self.commit_ref = commit_ref
        self.reason = reason
        msg = f"Invalid or non-existent commit ref: {commit_ref!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class NoteSizeExceededError(NoteStoreError):
    """Raised before any backend call when a note is larger than allowed."""

    def __init__(self, size: int, max_size: int):
        self.size = size
        self.max_size = max_size
        super().__init__(f"Note size {size} exceeds maximum allowed size {max_size}")


class RemoteRefNotFoundError(NoteStoreError):
    """
    Raised when the remote has no copy of the notes ref.

    Synchronization treats this as absence, not failure.
    """

    def __init__(self, remote: str, ref: str):
        self.remote = remote
        self.ref = ref
        super().__init__(f"Remote {remote!r} has no ref {ref}")


class MergeConflictError(NoteStoreError):
    """
    Raised when remote notes cannot be merged into the local ref.

    The local ref has already been rolled back when this is raised.
    Requires caller intervention; never retried.
    """

    def __init__(self, ref: str, source_ref: str, stderr: str = ""):
        self.ref = ref
        self.source_ref = source_ref
        self.stderr = stderr
        super().__init__(
            f"Failed to merge {source_ref} into {ref}: conflict\n{stderr.strip()}"
        )


class PushConflictError(NoteStoreError):
    """Raised when a push is rejected because the remote moved (non-fast-forward)."""

    def __init__(self, remote: str, ref: str, stderr: str = ""):
        self.remote = remote
        self.ref = ref
        self.stderr = stderr
        super().__init__(
            f"Push of {ref} to {remote!r} rejected by concurrent update\n{stderr.strip()}"
        )


class PushRetriesExhaustedError(NoteStoreError):
    """Raised when every push attempt ended in a push conflict."""

    def __init__(self, remote: str, ref: str, attempts: int):
        self.remote = remote
        self.ref = ref
        self.attempts = attempts
        super().__init__(f"Push failed after {attempts} attempts ({ref} -> {remote})")


class NoteDecodeError(NoteStoreError):
    """
    Raised when a note's JSON document stream stops parsing.

    `decoded` holds every value decoded before the failure so callers
    can decide whether the partial data is usable.
    """

    def __init__(
        self,
        message: str,
        decoded: List[Any],
        offset: int,
        context: str,
    ):
        self.decoded = decoded
        self.documents_processed = len(decoded)
        self.offset = offset
        self.context = context
        super().__init__(
            f"{message} (processed {self.documents_processed} objects). "
            f"Context around error (offset approx {offset}): \"...{context}...\""
        )


class DecodedObjectLimitExceededError(NoteDecodeError):
    """Raised when a note holds more JSON documents than allowed."""

    def __init__(self, limit: int, decoded: List[Any], offset: int, context: str):
        self.limit = limit
        super().__init__(
            f"Exceeded maximum number of JSON objects ({limit}) in note",
            decoded,
            offset,
            context,
        )


class BackendCommandError(NoteStoreError):
    """
    Backend failure that matched no known pattern.

    Wraps the raw exit status and diagnostic text verbatim.
    """

    def __init__(self, operation: str, exit_status: int, stderr: str, message: str = ""):
        self.operation = operation
        self.exit_status = exit_status
        self.stderr = stderr
        prefix = message or f"Backend operation {operation} failed"
        super().__init__(f"{prefix} (exit status {exit_status}): {stderr.strip()}")


class OperationCancelledError(NoteStoreError):
    """Raised when a backend call is cancelled or its deadline expires."""

    def __init__(self, operation: str, reason: str = "cancelled"):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Backend operation {operation} {reason}")
