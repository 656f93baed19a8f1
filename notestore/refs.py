"""
Ref naming and commit ref validation.

Namespace → ref mapping is deterministic:
- ""                    → refs/notes/commits (backend default)
- "refs/notes/<x>"      → unchanged
- anything else         → refs/notes/<namespace>
"""

from .errors import InvalidCommitRefError


NOTES_REF_PREFIX = "refs/notes/"
DEFAULT_NOTES_REF = "refs/notes/commits"

# Empty commit ref means "current head"
HEAD = "HEAD"


def format_namespace_ref(namespace: str) -> str:
    """Map a namespace to its notes ref."""
    if namespace == "":
        return DEFAULT_NOTES_REF
    if namespace.startswith(NOTES_REF_PREFIX):
        return namespace
    return NOTES_REF_PREFIX + namespace


def remote_tracking_ref(ref: str, remote: str) -> str:
    """
    Local mirror location of a remote's notes ref.

    refs/notes/commits on "origin" → refs/remotes/origin/notes/commits
    """
    if not ref.startswith(NOTES_REF_PREFIX):
        raise ValueError(f"Not a notes ref: {ref!r}")
    return f"refs/remotes/{remote}/{ref[len('refs/'):]}"


def is_safe_commit_ref(commit_ref: str) -> bool:
    """
    Light-weight format check.

    Allows hashes and symbolic revisions (HEAD~1, branch names). Rejects
    strings the backend could read as an option, and NUL bytes.
    """
    if commit_ref == "":
        return True
    if commit_ref.startswith("-"):
        return False
    return "\x00" not in commit_ref


def validate_commit_ref_format(commit_ref: str) -> None:
    """Raise InvalidCommitRefError if the ref fails the format check."""
    if not isinstance(commit_ref, str):
        raise InvalidCommitRefError(repr(commit_ref), "commit ref must be a string")
    if not is_safe_commit_ref(commit_ref):
        raise InvalidCommitRefError(commit_ref, "unsafe revision expression")
