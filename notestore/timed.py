"""
Timing wrappers.

Compose around a store or manager and log the wall-clock duration of
every call at info level, successful or not. Behaviour is otherwise
identical to the wrapped instance.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .adapter import CallContext
from .manager import NotesManager
from .store import BaseNoteStore

logger = logging.getLogger(__name__)


@contextmanager
def _timed(label: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.info(f"[Timing] {label}() took {time.perf_counter() - start:.6f}s")


class TimedNoteStore(BaseNoteStore):
    """Annotation store that logs how long each operation takes."""

    def __init__(self, inner: BaseNoteStore):
        self.inner = inner

    def ref_for(self, namespace: str) -> str:
        with _timed("NoteStore.ref_for"):
            return self.inner.ref_for(namespace)

    def get(self, namespace: str, commit_ref: str = "", ctx: Optional[CallContext] = None) -> str:
        with _timed("NoteStore.get"):
            return self.inner.get(namespace, commit_ref, ctx=ctx)

    def set(
        self, namespace: str, commit_ref: str, content: str, ctx: Optional[CallContext] = None
    ) -> None:
        with _timed("NoteStore.set"):
            self.inner.set(namespace, commit_ref, content, ctx=ctx)

    def delete(self, namespace: str, commit_ref: str = "", ctx: Optional[CallContext] = None) -> None:
        with _timed("NoteStore.delete"):
            self.inner.delete(namespace, commit_ref, ctx=ctx)

    def list(self, namespace: str, ctx: Optional[CallContext] = None) -> List[str]:
        with _timed("NoteStore.list"):
            return self.inner.list(namespace, ctx=ctx)


class TimedNotesManager(NotesManager):
    """Notes manager that logs how long each operation takes."""

    def __init__(self, inner: NotesManager):
        self.inner = inner

    @property
    def ref(self) -> str:
        with _timed("NotesManager.ref"):
            return self.inner.ref

    def get_note(self, commit_ref: str = "", ctx: Optional[CallContext] = None) -> str:
        with _timed("NotesManager.get_note"):
            return self.inner.get_note(commit_ref, ctx=ctx)

    def set_note(self, commit_ref: str, content: str, ctx: Optional[CallContext] = None) -> None:
        with _timed("NotesManager.set_note"):
            self.inner.set_note(commit_ref, content, ctx=ctx)

    def delete_note(self, commit_ref: str = "", ctx: Optional[CallContext] = None) -> None:
        with _timed("NotesManager.delete_note"):
            self.inner.delete_note(commit_ref, ctx=ctx)

    def list_notes(self, ctx: Optional[CallContext] = None) -> List[str]:
        with _timed("NotesManager.list_notes"):
            return self.inner.list_notes(ctx=ctx)

    def get_notes_bulk(
        self, commit_refs: Iterable[str], ctx: Optional[CallContext] = None
    ) -> Tuple[Dict[str, str], Dict[str, Exception]]:
        with _timed("NotesManager.get_notes_bulk"):
            return self.inner.get_notes_bulk(commit_refs, ctx=ctx)

    def get_json(self, commit_ref: str = "", item_type: Any = Any, ctx: Optional[CallContext] = None) -> List[Any]:
        with _timed("NotesManager.get_json"):
            return self.inner.get_json(commit_ref, item_type, ctx=ctx)

    def set_json(self, commit_ref: str, value: Any, ctx: Optional[CallContext] = None) -> None:
        with _timed("NotesManager.set_json"):
            self.inner.set_json(commit_ref, value, ctx=ctx)

    def fetch_notes(self, remote: str, ctx: Optional[CallContext] = None) -> None:
        with _timed("NotesManager.fetch_notes"):
            self.inner.fetch_notes(remote, ctx=ctx)

    def push_notes(self, remote: str, ctx: Optional[CallContext] = None) -> None:
        with _timed("NotesManager.push_notes"):
            self.inner.push_notes(remote, ctx=ctx)

    def push_notes_with_retry(
        self, remote: str, attempts: int, ctx: Optional[CallContext] = None
    ) -> None:
        with _timed("NotesManager.push_notes_with_retry"):
            self.inner.push_notes_with_retry(remote, attempts, ctx=ctx)
