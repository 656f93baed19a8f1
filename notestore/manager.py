"""
Notes manager facade.

One object bound to one namespace that bundles the annotation store,
bulk reader, JSON codec and synchronizer behind a single interface.

Design rules:
- The manager owns no state beyond its namespace and collaborators
- Cross-cutting wrappers (timing) implement NotesManager and delegate
- create_manager() is the only place that picks the git backend
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .adapter import BackendAdapter, CallContext
from .bulk import BulkReader
from .codec import JsonNoteCodec
from .config import DEFAULT_SETTINGS, NoteStoreSettings
from .git_adapter import GitAdapter
from .store import NoteStore
from .sync import Synchronizer

logger = logging.getLogger(__name__)


class NotesManager(ABC):
    """Operations on a single notes namespace."""

    @property
    @abstractmethod
    def ref(self) -> str:
        pass

    @abstractmethod
    def get_note(self, commit_ref: str = "", ctx: Optional[CallContext] = None) -> str:
        pass

    @abstractmethod
    def set_note(self, commit_ref: str, content: str, ctx: Optional[CallContext] = None) -> None:
        pass

    @abstractmethod
    def delete_note(self, commit_ref: str = "", ctx: Optional[CallContext] = None) -> None:
        pass

    @abstractmethod
    def list_notes(self, ctx: Optional[CallContext] = None) -> List[str]:
        pass

    @abstractmethod
    def get_notes_bulk(
        self, commit_refs: Iterable[str], ctx: Optional[CallContext] = None
    ) -> Tuple[Dict[str, str], Dict[str, Exception]]:
        pass

    @abstractmethod
    def get_json(self, commit_ref: str = "", item_type: Any = Any, ctx: Optional[CallContext] = None) -> List[Any]:
        pass

    @abstractmethod
    def set_json(self, commit_ref: str, value: Any, ctx: Optional[CallContext] = None) -> None:
        pass

    @abstractmethod
    def fetch_notes(self, remote: str, ctx: Optional[CallContext] = None) -> None:
        pass

    @abstractmethod
    def push_notes(self, remote: str, ctx: Optional[CallContext] = None) -> None:
        pass

    @abstractmethod
    def push_notes_with_retry(
        self, remote: str, attempts: int, ctx: Optional[CallContext] = None
    ) -> None:
        pass


class GitNotesManager(NotesManager):
    """Default manager: store, bulk reader, codec and synchronizer over one adapter."""

    def __init__(self, namespace: str, adapter: BackendAdapter, settings: Optional[NoteStoreSettings] = None):
        self.namespace = namespace
        self.adapter = adapter
        self.settings = settings or DEFAULT_SETTINGS
        self.store = NoteStore(adapter, self.settings)
        self.bulk = BulkReader(self.store, max_concurrency=self.settings.bulk_concurrency)
        self.codec = JsonNoteCodec(self.store, max_documents=self.settings.max_json_documents)
        self.sync = Synchronizer(adapter, self.settings)

    @property
    def ref(self) -> str:
        return self.store.ref_for(self.namespace)

    def get_note(self, commit_ref: str = "", ctx: Optional[CallContext] = None) -> str:
        return self.store.get(self.namespace, commit_ref, ctx=ctx)

    def set_note(self, commit_ref: str, content: str, ctx: Optional[CallContext] = None) -> None:
        self.store.set(self.namespace, commit_ref, content, ctx=ctx)

    def delete_note(self, commit_ref: str = "", ctx: Optional[CallContext] = None) -> None:
        self.store.delete(self.namespace, commit_ref, ctx=ctx)

    def list_notes(self, ctx: Optional[CallContext] = None) -> List[str]:
        return self.store.list(self.namespace, ctx=ctx)

    def get_notes_bulk(
        self, commit_refs: Iterable[str], ctx: Optional[CallContext] = None
    ) -> Tuple[Dict[str, str], Dict[str, Exception]]:
        return self.bulk.get_many(self.namespace, commit_refs, ctx=ctx)

    def get_json(self, commit_ref: str = "", item_type: Any = Any, ctx: Optional[CallContext] = None) -> List[Any]:
        return self.codec.get_json(self.namespace, commit_ref, item_type, ctx=ctx)

    def set_json(self, commit_ref: str, value: Any, ctx: Optional[CallContext] = None) -> None:
        self.codec.set_json(self.namespace, commit_ref, value, ctx=ctx)

    def fetch_notes(self, remote: str, ctx: Optional[CallContext] = None) -> None:
        self.sync.fetch(self.namespace, remote, ctx=ctx)

    def push_notes(self, remote: str, ctx: Optional[CallContext] = None) -> None:
        """Merge and push with the configured number of attempts."""
        self.sync.push(self.namespace, remote, ctx=ctx)

    def push_notes_with_retry(
        self, remote: str, attempts: int, ctx: Optional[CallContext] = None
    ) -> None:
        self.sync.push(self.namespace, remote, attempts=attempts, ctx=ctx)


def create_manager(
    namespace: str,
    repo_path: Optional[Union[str, Path]] = None,
    settings: Optional[NoteStoreSettings] = None,
    timed: bool = False,
) -> NotesManager:
    """
    Build a manager for a git repository.

    Args:
        namespace: Notes namespace ("" = default refs/notes/commits)
        repo_path: Repository directory (defaults to the CWD)
        settings: Settings (defaults to NOTESTORE_* environment overrides)
        timed: Wrap the manager so every call logs its duration

    Returns:
        NotesManager instance
    """
    settings = settings or NoteStoreSettings.from_env()
    manager: NotesManager = GitNotesManager(namespace, GitAdapter(repo_path, settings), settings)
    if timed:
        # Imported here: timed wraps this module's interface
        from .timed import TimedNotesManager

        manager = TimedNotesManager(manager)
    logger.debug(f"[Manager] Created manager for {manager.ref} at {repo_path or '.'}")
    return manager
