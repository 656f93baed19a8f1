"""
notestore - Per-commit annotation storage over git notes.

Notes are attached to commits, grouped into namespaces, and
synchronized with remotes through fetch / merge / push.

notestore reads and writes notes.
notestore merges remote notes line-wise (cat_sort_uniq).
notestore retries pushes that lose a race.
notestore NEVER rewrites commits.

Constraints:
- One namespace = one notes ref
- Backend failures are classified, never guessed
- No global mutable state apart from per-ref push locks
- No handler configuration: logging is left to the application
"""

from .adapter import BackendAdapter, BackendOperation, CallContext, CommandResult
from .bulk import BulkReader
from .classifier import ErrorKind, classify
from .codec import JsonNoteCodec, decode, encode
from .config import DEFAULT_SETTINGS, NoteStoreSettings
from .errors import (
    BackendCommandError,
    DecodedObjectLimitExceededError,
    InvalidCommitRefError,
    MergeConflictError,
    NoteDecodeError,
    NoteNotFoundError,
    NoteSizeExceededError,
    NoteStoreError,
    OperationCancelledError,
    PushConflictError,
    PushRetriesExhaustedError,
    RemoteRefNotFoundError,
)
from .git_adapter import GitAdapter
from .manager import GitNotesManager, NotesManager, create_manager
from .memory_adapter import InMemoryAdapter
from .refs import format_namespace_ref
from .store import BaseNoteStore, NoteStore
from .sync import Synchronizer
from .timed import TimedNoteStore, TimedNotesManager

__version__ = "0.1.0"

__all__ = [
    "BackendAdapter",
    "BackendCommandError",
    "BackendOperation",
    "BaseNoteStore",
    "BulkReader",
    "CallContext",
    "CommandResult",
    "DEFAULT_SETTINGS",
    "DecodedObjectLimitExceededError",
    "ErrorKind",
    "GitAdapter",
    "GitNotesManager",
    "InMemoryAdapter",
    "InvalidCommitRefError",
    "JsonNoteCodec",
    "MergeConflictError",
    "NoteDecodeError",
    "NoteNotFoundError",
    "NoteSizeExceededError",
    "NoteStore",
    "NoteStoreError",
    "NoteStoreSettings",
    "NotesManager",
    "OperationCancelledError",
    "PushConflictError",
    "PushRetriesExhaustedError",
    "RemoteRefNotFoundError",
    "Synchronizer",
    "TimedNoteStore",
    "TimedNotesManager",
    "classify",
    "create_manager",
    "decode",
    "encode",
    "format_namespace_ref",
]
