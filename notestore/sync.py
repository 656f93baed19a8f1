"""
Notes synchronization with a remote.

Push protocol (one attempt):
1. Stabilize  - abort any in-progress notes merge on the local ref
2. Fetch      - mirror the remote ref into its remote-tracking ref;
                a missing remote ref means "nothing to merge"
3. Snapshot   - remember the local ref hash (or absence) for rollback
4. Merge      - merge the tracking ref with the configured strategy
                (cat_sort_uniq); any failure rolls the local ref back
5. Bootstrap  - create an empty notes ref if none exists yet
6. Push       - a non-fast-forward rejection is retried with backoff

Fetch protocol: force-fetch the remote ref over the local one (remote
wins), then best-effort fetch of the commits the notes refer to.

Rules:
- Attempts are strictly sequential; one attempt at a time per
  (repository, ref, remote) within this process
- Optimistic concurrency only: no cross-process lock
- Merge failures are never retried and never silently dropped
"""

import logging
import threading
import time
import weakref
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .adapter import BackendAdapter, BackendOperation, CallContext, CommandResult
from .classifier import ErrorKind, classify
from .config import DEFAULT_SETTINGS, NoteStoreSettings
from .errors import (
    BackendCommandError,
    MergeConflictError,
    PushConflictError,
    PushRetriesExhaustedError,
)
from .refs import format_namespace_ref, remote_tracking_ref

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteTrackingState:
    """Per-attempt snapshot used for rollback. Never persisted."""

    local_ref_hash: Optional[str]
    remote_exists: bool
    tracking_ref_exists: bool = False


# Entries disappear once no push holds or waits on the lock
_attempt_locks: "weakref.WeakValueDictionary[Tuple[str, str, str], threading.Lock]" = weakref.WeakValueDictionary()
_attempt_locks_guard = threading.Lock()


def _attempt_lock(repository_id: str, ref: str, remote: str) -> threading.Lock:
    with _attempt_locks_guard:
        return _attempt_locks.setdefault((repository_id, ref, remote), threading.Lock())


class Synchronizer:
    """
    Fetch / merge / push of a notes namespace against a remote.

    The backend's merge state is repository-wide, so only one push
    attempt runs at a time per (repository, ref, remote) in this process.
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        settings: NoteStoreSettings = DEFAULT_SETTINGS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            adapter: Backend adapter
            settings: Attempts, backoff and merge strategy
            sleep: Backoff sleeper (injectable for tests)
        """
        self.adapter = adapter
        self.settings = settings
        self._sleep = sleep

    # =========================================================================
    # Push
    # =========================================================================

    def push(
        self,
        namespace: str,
        remote: str,
        attempts: Optional[int] = None,
        ctx: Optional[CallContext] = None,
    ) -> None:
        """
        Merge remote notes into the local ref and push the result.

        Args:
            namespace: Notes namespace
            remote: Remote name
            attempts: Maximum attempts (defaults to settings.push_attempts)
            ctx: Optional cancellation token

        Raises:
            ValueError: If remote is empty or attempts < 1
            MergeConflictError: Remote notes could not be merged (rolled back)
            PushRetriesExhaustedError: Every attempt lost a push race
            BackendCommandError: Any unrecognised backend failure
        """
        if not remote:
            raise ValueError("remote cannot be empty")
        attempts = self.settings.push_attempts if attempts is None else attempts
        if attempts < 1:
            raise ValueError(f"attempts must be at least 1, got {attempts}")

        ref = format_namespace_ref(namespace)
        last_conflict: Optional[PushConflictError] = None

        with _attempt_lock(self.adapter.repository_id, ref, remote):
            for attempt in range(attempts):
                try:
                    self._push_attempt(ref, remote, ctx)
                    logger.info(f"[Sync] Pushed {ref} to {remote}")
                    return
                except PushConflictError as e:
                    last_conflict = e
                    if attempt < attempts - 1:
                        delay = (attempt * attempt) * self.settings.push_backoff_seconds
                        logger.warning(
                            f"[Sync] Push of {ref} to {remote} rejected by concurrent update, "
                            f"retry {attempt + 1}/{attempts} in {delay:.2f}s"
                        )
                        self._sleep(delay)

        raise PushRetriesExhaustedError(remote, ref, attempts) from last_conflict

    def _push_attempt(self, ref: str, remote: str, ctx: Optional[CallContext]) -> None:
        tracking_ref = remote_tracking_ref(ref, remote)

        # 1. Stabilize; failure just means no merge was in progress
        self.adapter.abort_merge(ref, ctx=ctx)

        # 2. Fetch into the remote-tracking ref
        fetch = self.adapter.fetch_ref(remote, ref, tracking_ref, force=True, ctx=ctx)
        remote_exists = True
        if not fetch.ok:
            if classify(BackendOperation.FETCH_REF, fetch) is not ErrorKind.REMOTE_REF_NOT_FOUND:
                raise BackendCommandError(
                    BackendOperation.FETCH_REF.value,
                    fetch.exit_status,
                    fetch.stderr,
                    f"Failed to fetch {ref} from {remote} before merge",
                )
            logger.debug(f"[Sync] Remote {remote} has no {ref}; nothing to merge")
            remote_exists = False

        # 3. Snapshot
        state = RemoteTrackingState(
            local_ref_hash=self._resolve_ref(ref, ctx),
            remote_exists=remote_exists,
            tracking_ref_exists=remote_exists and self._resolve_ref(tracking_ref, ctx) is not None,
        )

        # 4. Merge
        if state.tracking_ref_exists:
            self._merge(ref, tracking_ref, state, ctx)

        # 5. Bootstrap a brand-new namespace so the push is well-defined
        if not self.adapter.ref_exists(ref, ctx=ctx):
            logger.info(f"[Sync] Initializing empty notes ref {ref}")
            init = self.adapter.initialize_empty_ref(ref, ctx=ctx)
            if not init.ok:
                raise BackendCommandError(
                    BackendOperation.INITIALIZE_EMPTY_REF.value,
                    init.exit_status,
                    init.stderr,
                    f"Failed to initialize empty notes ref {ref}",
                )

        # 6. Push
        push = self.adapter.push_ref(remote, ref, ctx=ctx)
        if push.ok:
            return
        if classify(BackendOperation.PUSH_REF, push) is ErrorKind.PUSH_CONFLICT:
            raise PushConflictError(remote, ref, push.stderr)
        raise BackendCommandError(
            BackendOperation.PUSH_REF.value,
            push.exit_status,
            push.stderr,
            f"Failed to push {ref} to {remote}",
        )

    def _resolve_ref(self, ref: str, ctx: Optional[CallContext]) -> Optional[str]:
        result = self.adapter.resolve_revision(ref, ctx=ctx)
        return result.stdout.strip() if result.ok and result.stdout else None

    def _merge(
        self, ref: str, tracking_ref: str, state: RemoteTrackingState, ctx: Optional[CallContext]
    ) -> None:
        merge = self.adapter.merge_ref(ref, self.settings.merge_strategy, tracking_ref, ctx=ctx)
        kind = classify(BackendOperation.MERGE_REF, merge)
        if merge.ok or kind is ErrorKind.MERGE_ALREADY_CURRENT:
            return

        logger.warning(f"[Sync] Merge of {tracking_ref} into {ref} failed, rolling back")
        self._rollback(ref, state, ctx)

        if kind is ErrorKind.MERGE_CONFLICT:
            raise MergeConflictError(ref, tracking_ref, merge.stderr or merge.stdout)
        raise BackendCommandError(
            BackendOperation.MERGE_REF.value,
            merge.exit_status,
            merge.stderr,
            f"Failed to merge {tracking_ref} into {ref}",
        )

    def _rollback(self, ref: str, state: RemoteTrackingState, ctx: Optional[CallContext]) -> None:
        self.adapter.abort_merge(ref, ctx=ctx)
        if state.local_ref_hash is not None:
            result: CommandResult = self.adapter.update_ref(ref, state.local_ref_hash, ctx=ctx)
        else:
            result = self.adapter.delete_ref(ref, ctx=ctx)
        if not result.ok:
            logger.error(f"[Sync] Rollback of {ref} failed: {result.stderr.strip()}")

    # =========================================================================
    # Fetch
    # =========================================================================

    def fetch(self, namespace: str, remote: str, ctx: Optional[CallContext] = None) -> None:
        """
        Replace the local notes ref with the remote's copy.

        Local divergence is overwritten: the remote wins. A remote without
        the ref is not an error.

        Raises:
            ValueError: If remote is empty
            BackendCommandError: Any unrecognised fetch failure
        """
        if not remote:
            raise ValueError("remote cannot be empty")
        ref = format_namespace_ref(namespace)

        fetch = self.adapter.fetch_ref(remote, ref, ref, force=True, ctx=ctx)
        if not fetch.ok:
            if classify(BackendOperation.FETCH_REF, fetch) is ErrorKind.REMOTE_REF_NOT_FOUND:
                logger.debug(f"[Sync] Remote {remote} has no {ref}; nothing to fetch")
                return
            raise BackendCommandError(
                BackendOperation.FETCH_REF.value,
                fetch.exit_status,
                fetch.stderr,
                f"Failed to fetch {ref} from {remote}",
            )

        self._fetch_referenced_commits(ref, remote, ctx)

    def _fetch_referenced_commits(self, ref: str, remote: str, ctx: Optional[CallContext]) -> None:
        """Best effort: failures are logged, never raised."""
        listing = self.adapter.list_note_keys(ref, ctx=ctx)
        if not listing.ok:
            logger.warning(f"[Sync] Could not list {ref} after fetch: {listing.stderr.strip()}")
            return

        keys = list(dict.fromkeys(
            parts[1] for parts in (line.split() for line in listing.stdout.splitlines()) if len(parts) >= 2
        ))
        if not keys:
            return

        result = self.adapter.fetch_objects(remote, keys, ctx=ctx)
        if not result.ok:
            logger.warning(
                f"[Sync] Could not fetch {len(keys)} referenced commit(s) from {remote}: "
                f"{result.stderr.strip()}"
            )
