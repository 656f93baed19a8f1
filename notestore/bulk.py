"""
Bulk note retrieval.

Fans single-key reads out over a bounded thread pool.

FAILURE SEMANTICS:
- Refs failing format validation go straight to the error map and are
  never dispatched
- One ref's failure never aborts the others
- No aggregate error: callers inspect both maps

CONCURRENCY MODEL:
- At most max_concurrency backend reads in flight at once
- Result maps are owned by the call, so concurrent calls are safe
- No ordering guarantee between refs
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, Optional, Tuple

from .adapter import CallContext
from .config import DEFAULT_SETTINGS
from .errors import NoteStoreError
from .refs import validate_commit_ref_format
from .store import BaseNoteStore

logger = logging.getLogger(__name__)


class BulkReader:
    """Concurrent multi-key reads over any BaseNoteStore."""

    def __init__(self, store: BaseNoteStore, max_concurrency: int = DEFAULT_SETTINGS.bulk_concurrency):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self.store = store
        self.max_concurrency = max_concurrency

    def get_many(
        self,
        namespace: str,
        commit_refs: Iterable[str],
        ctx: Optional[CallContext] = None,
    ) -> Tuple[Dict[str, str], Dict[str, Exception]]:
        """
        Read the notes of many commits.

        Args:
            namespace: Notes namespace
            commit_refs: Commit refs to read; duplicates are read once
            ctx: Optional cancellation token shared by every read

        Returns:
            Tuple of (notes by ref, errors by ref). Every requested ref
            appears in exactly one of the two maps.
        """
        notes: Dict[str, str] = {}
        errors: Dict[str, Exception] = {}

        pending = []
        for commit_ref in dict.fromkeys(commit_refs):
            try:
                validate_commit_ref_format(commit_ref)
            except NoteStoreError as e:
                errors[commit_ref] = e
                continue
            pending.append(commit_ref)

        if not pending:
            return notes, errors

        workers = min(self.max_concurrency, len(pending))
        logger.debug(f"[Bulk] Reading {len(pending)} note(s) in {namespace!r} with {workers} worker(s)")

        future_to_ref: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notes_bulk") as executor:
            for commit_ref in pending:
                future = executor.submit(self.store.get, namespace, commit_ref, ctx)
                future_to_ref[future] = commit_ref

            for future in as_completed(future_to_ref):
                commit_ref = future_to_ref[future]
                try:
                    notes[commit_ref] = future.result()
                except Exception as e:
                    # Per-ref outcome; recorded, never raised
                    errors[commit_ref] = e

        if errors:
            logger.debug(f"[Bulk] {len(errors)} of {len(notes) + len(errors)} read(s) failed")
        return notes, errors
