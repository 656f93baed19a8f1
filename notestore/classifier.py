"""
Backend error classification.

Turns a failed backend call (exit status + diagnostic text) into one
ErrorKind from a closed set.

Rules:
- Pure functions, no side effects
- Conservative: UNCLASSIFIED beats a wrong specific kind
- A specific kind needs a matching diagnostic, not just an exit status
  (the one exception is a silent exit 1 from fetch, which the backend
  emits when the remote ref is missing)
- Environment failures (not a repository, unreachable remote) are
  always UNCLASSIFIED
"""

import re
from enum import Enum

from .adapter import BackendOperation, CommandResult


class ErrorKind(str, Enum):
    """Closed set of backend failure classifications."""

    NOTE_NOT_FOUND = "note_not_found"
    INVALID_COMMIT_REF = "invalid_commit_ref"
    REMOTE_REF_NOT_FOUND = "remote_ref_not_found"
    NOTES_REF_NOT_FOUND = "notes_ref_not_found"
    DELETE_TARGET_MISSING = "delete_target_missing"
    PUSH_CONFLICT = "push_conflict"
    MERGE_CONFLICT = "merge_conflict"
    MERGE_ALREADY_CURRENT = "merge_already_current"
    UNCLASSIFIED = "unclassified"


# Kinds that mean the operation actually succeeded
BENIGN_KINDS = frozenset({ErrorKind.DELETE_TARGET_MISSING, ErrorKind.MERGE_ALREADY_CURRENT})

# Kinds worth retrying without caller intervention
RETRYABLE_KINDS = frozenset({ErrorKind.PUSH_CONFLICT})


# Environment failures
_ENVIRONMENT_PATTERN = re.compile(
    r"not a git repository"
    r"|does not appear to be a git repository"
    r"|could not read from remote repository"
    r"|permission denied"
    r"|unable to access",
    re.IGNORECASE,
)

# Note lookups
_NOTE_NOT_FOUND_PATTERN = re.compile(
    r"no notes? found|no note found for object|failed to get note",
    re.IGNORECASE,
)
_OBJECT_HAS_NO_NOTE_PATTERN = re.compile(r"has no note", re.IGNORECASE)

# Revision resolution
_INVALID_REVISION_PATTERN = re.compile(
    r"failed to resolve .* as a valid ref"
    r"|fatal: failed to resolve"
    r"|needed a single revision"
    r"|unknown revision"
    r"|bad revision"
    r"|not a valid object name"
    r"|ambiguous argument",
    re.IGNORECASE,
)

# Notes ref state
_NOTES_REF_MISSING_PATTERN = re.compile(
    r"bad notes ref|does not exist|no notes found",
    re.IGNORECASE,
)

# Remote refs
_REMOTE_REF_MISSING_PATTERN = re.compile(
    r"couldn't find remote ref|no such ref|fetch-pack: invalid refspec",
    re.IGNORECASE,
)

# Push rejection by a concurrent writer; "[remote rejected]" is a hook, not a race
_PUSH_CONFLICT_PATTERN = re.compile(
    r"non-fast-forward|fetch first|\[rejected\]|updates were rejected",
    re.IGNORECASE,
)

# Merge status
_MERGE_CURRENT_PATTERN = re.compile(
    r"already up[ -]to[ -]date|nothing to merge",
    re.IGNORECASE,
)
_MERGE_CONFLICT_PATTERN = re.compile(r"conflict", re.IGNORECASE)


def is_environment_failure(result: CommandResult) -> bool:
    return bool(_ENVIRONMENT_PATTERN.search(result.combined))


def classify(operation: BackendOperation, result: CommandResult) -> ErrorKind:
    """
    Classify a failed backend call.

    Args:
        operation: Which capability produced the result
        result: Raw exit status and output

    Returns:
        The matching ErrorKind, UNCLASSIFIED when nothing matches.
    """
    if operation is BackendOperation.MERGE_REF and _MERGE_CURRENT_PATTERN.search(result.combined):
        return ErrorKind.MERGE_ALREADY_CURRENT

    if result.ok or is_environment_failure(result):
        return ErrorKind.UNCLASSIFIED

    classifier = _CLASSIFIERS.get(operation)
    if classifier is None:
        return ErrorKind.UNCLASSIFIED
    return classifier(result)


def _classify_read(result: CommandResult) -> ErrorKind:
    if result.exit_status == 1 and _NOTE_NOT_FOUND_PATTERN.search(result.combined):
        return ErrorKind.NOTE_NOT_FOUND
    if _INVALID_REVISION_PATTERN.search(result.combined):
        return ErrorKind.INVALID_COMMIT_REF
    return ErrorKind.UNCLASSIFIED


def _classify_resolve(result: CommandResult) -> ErrorKind:
    if _INVALID_REVISION_PATTERN.search(result.combined):
        return ErrorKind.INVALID_COMMIT_REF
    return ErrorKind.UNCLASSIFIED


def _classify_remove(result: CommandResult) -> ErrorKind:
    if _OBJECT_HAS_NO_NOTE_PATTERN.search(result.combined):
        return ErrorKind.DELETE_TARGET_MISSING
    if _INVALID_REVISION_PATTERN.search(result.combined):
        return ErrorKind.INVALID_COMMIT_REF
    return ErrorKind.UNCLASSIFIED


def _classify_list(result: CommandResult) -> ErrorKind:
    if _NOTES_REF_MISSING_PATTERN.search(result.combined):
        return ErrorKind.NOTES_REF_NOT_FOUND
    return ErrorKind.UNCLASSIFIED


def _classify_fetch(result: CommandResult) -> ErrorKind:
    if _REMOTE_REF_MISSING_PATTERN.search(result.stderr):
        return ErrorKind.REMOTE_REF_NOT_FOUND
    if result.exit_status == 1 and not result.stderr.strip():
        return ErrorKind.REMOTE_REF_NOT_FOUND
    return ErrorKind.UNCLASSIFIED


def _classify_push(result: CommandResult) -> ErrorKind:
    if _PUSH_CONFLICT_PATTERN.search(result.combined):
        return ErrorKind.PUSH_CONFLICT
    return ErrorKind.UNCLASSIFIED


def _classify_merge(result: CommandResult) -> ErrorKind:
    if _MERGE_CONFLICT_PATTERN.search(result.combined):
        return ErrorKind.MERGE_CONFLICT
    return ErrorKind.UNCLASSIFIED


_CLASSIFIERS = {
    BackendOperation.READ_NOTE: _classify_read,
    BackendOperation.RESOLVE_REVISION: _classify_resolve,
    BackendOperation.WRITE_NOTE: _classify_resolve,
    BackendOperation.REMOVE_NOTE: _classify_remove,
    BackendOperation.LIST_NOTE_KEYS: _classify_list,
    BackendOperation.FETCH_REF: _classify_fetch,
    BackendOperation.PUSH_REF: _classify_push,
    BackendOperation.MERGE_REF: _classify_merge,
}


def is_benign(kind: ErrorKind) -> bool:
    """True for kinds that are treated as success."""
    return kind in BENIGN_KINDS


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS
