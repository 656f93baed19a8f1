"""
Backend adapter contract.

The versioned-object backend is an external collaborator. The core only
sees the capability set defined here; every capability returns the raw
(exit status, stdout, stderr) triple and leaves interpretation to the
error classifier.

Design rules:
- Adapters never raise for backend-signalled failures, they return them
- Cancellation is the one exception: it raises OperationCancelledError
- Observers are passed at construction, never installed globally
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from .errors import OperationCancelledError


class BackendOperation(str, Enum):
    """Capabilities of the backend, used for classification and observers."""

    RESOLVE_REVISION = "resolve_revision"
    READ_NOTE = "read_note"
    WRITE_NOTE = "write_note"
    REMOVE_NOTE = "remove_note"
    LIST_NOTE_KEYS = "list_note_keys"
    BATCH_GET_TIMESTAMPS = "batch_get_timestamps"
    FETCH_REF = "fetch_ref"
    FETCH_OBJECTS = "fetch_objects"
    PUSH_REF = "push_ref"
    MERGE_REF = "merge_ref"
    ABORT_MERGE = "abort_merge"
    UPDATE_REF = "update_ref"
    DELETE_REF = "delete_ref"
    REF_EXISTS = "ref_exists"
    INITIALIZE_EMPTY_REF = "initialize_empty_ref"


@dataclass(frozen=True)
class CommandResult:
    """Raw outcome of one backend call."""

    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def combined(self) -> str:
        """stderr followed by stdout, for pattern matching."""
        return f"{self.stderr}\n{self.stdout}"


@dataclass
class CallContext:
    """
    Cancellation token and optional deadline for backend calls.

    Passed through every layer down to the subprocess boundary.
    """

    cancel_event: threading.Event = field(default_factory=threading.Event)
    deadline: Optional[float] = None  # time.monotonic() value

    @classmethod
    def with_timeout(cls, seconds: float) -> "CallContext":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, operation: str) -> None:
        """Raise OperationCancelledError if cancelled or past the deadline."""
        if self.cancelled:
            raise OperationCancelledError(operation, "cancelled")
        if self.expired:
            raise OperationCancelledError(operation, "deadline exceeded")


# Called with (operation, args) before a call and (operation, args, result) after.
BeforeObserver = Callable[[BackendOperation, Sequence[str]], None]
AfterObserver = Callable[[BackendOperation, Sequence[str], CommandResult], None]


class BackendAdapter(ABC):
    """
    Abstract capability set of the versioned-object backend.

    Output formats shared by all implementations:
    - list_note_keys: one "<note-object-id> <key>" line per note
    - batch_get_timestamps: one "<full-hash> <unix-timestamp>" line per key
    - resolve_revision: the full hash on stdout
    """

    def __init__(
        self,
        before: Optional[Iterable[BeforeObserver]] = None,
        after: Optional[Iterable[AfterObserver]] = None,
    ):
        self._before: List[BeforeObserver] = list(before or [])
        self._after: List[AfterObserver] = list(after or [])

    @property
    def repository_id(self) -> str:
        """Identifies the repository behind this adapter (for per-repository locks)."""
        return f"{type(self).__name__}:{id(self)}"

    def _notify_before(self, operation: BackendOperation, args: Sequence[str]) -> None:
        for observer in self._before:
            observer(operation, tuple(args))

    def _notify_after(
        self, operation: BackendOperation, args: Sequence[str], result: CommandResult
    ) -> None:
        for observer in self._after:
            observer(operation, tuple(args), result)

    def _observed(
        self,
        operation: BackendOperation,
        args: Sequence[str],
        call: Callable[[], CommandResult],
    ) -> CommandResult:
        """Run one capability call between its observers."""
        self._notify_before(operation, args)
        result = call()
        self._notify_after(operation, args, result)
        return result

    @abstractmethod
    def resolve_revision(self, expr: str, ctx: Optional[CallContext] = None) -> CommandResult:
        pass

    @abstractmethod
    def read_note(self, ref: str, key: str, ctx: Optional[CallContext] = None) -> CommandResult:
        pass

    @abstractmethod
    def write_note(
        self, ref: str, key: str, content: str, ctx: Optional[CallContext] = None
    ) -> CommandResult:
        """Attach content to key, overwriting any existing note."""
        pass

    @abstractmethod
    def remove_note(self, ref: str, key: str, ctx: Optional[CallContext] = None) -> CommandResult:
        pass

    @abstractmethod
    def list_note_keys(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        pass

    @abstractmethod
    def batch_get_timestamps(
        self, keys: Sequence[str], ctx: Optional[CallContext] = None
    ) -> CommandResult:
        """Committer timestamps for all keys in a single backend call."""
        pass

    @abstractmethod
    def fetch_ref(
        self,
        remote: str,
        remote_ref: str,
        local_ref: str,
        force: bool = False,
        ctx: Optional[CallContext] = None,
    ) -> CommandResult:
        pass

    @abstractmethod
    def fetch_objects(
        self, remote: str, object_ids: Sequence[str], ctx: Optional[CallContext] = None
    ) -> CommandResult:
        pass

    @abstractmethod
    def push_ref(self, remote: str, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        pass

    @abstractmethod
    def merge_ref(
        self, ref: str, strategy: str, source_ref: str, ctx: Optional[CallContext] = None
    ) -> CommandResult:
        pass

    @abstractmethod
    def abort_merge(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        pass

    @abstractmethod
    def update_ref(self, ref: str, object_id: str, ctx: Optional[CallContext] = None) -> CommandResult:
        pass

    @abstractmethod
    def delete_ref(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        pass

    @abstractmethod
    def ref_exists(self, ref: str, ctx: Optional[CallContext] = None) -> bool:
        pass

    @abstractmethod
    def initialize_empty_ref(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        """Commit an empty tree once and point ref at it."""
        pass
