"""
Synchronizer Tests - fetch / merge / push against an in-memory remote

Test Coverage:
--------------
1. Push to a remote without the notes ref
2. Push merges remote-only keys and divergent same-key contents
3. Retry after a concurrent writer wins the push race
4. Retries exhausted
5. Merge failure rolls the local ref back and is never retried
6. Fetch: remote wins, missing remote ref, unknown remote
7. Best-effort fetch of referenced commits

Concurrent writers are injected deterministically with an after-observer
on the local adapter's fetch.
"""

import gc
import logging

import pytest

from notestore.adapter import BackendOperation, CallContext, CommandResult
from notestore.config import NoteStoreSettings
from notestore.errors import (
    BackendCommandError,
    MergeConflictError,
    OperationCancelledError,
    PushConflictError,
    PushRetriesExhaustedError,
)
from notestore.memory_adapter import InMemoryAdapter
from notestore.store import NoteStore
from notestore.sync import Synchronizer, _attempt_locks

REF = "refs/notes/review"


def concurrent_writer(remote: InMemoryAdapter, commit: str, every_time: bool = False):
    """After-observer that writes to the remote right after each local fetch."""
    writes = []
    remote_store = NoteStore(remote)

    def observer(operation, args, result):
        if operation is not BackendOperation.FETCH_REF:
            return
        if writes and not every_time:
            return
        writes.append(operation)
        remote_store.set("review", commit, f"from other writer {len(writes)}")

    observer.writes = writes
    return observer


# =============================================================================
# Push
# =============================================================================

class TestPush:

    def test_push_to_remote_without_ref(self, memory_remote, memory_local):
        NoteStore(memory_local).set("review", memory_local.head, "local note")
        Synchronizer(memory_local).push("review", "origin")
        assert memory_remote.notes_at(REF) == {memory_local.head: "local note"}

    def test_protocol_order(self, memory_remote):
        ops = []
        local = InMemoryAdapter.clone(memory_remote, before=[lambda op, args: ops.append(op)])
        NoteStore(local).set("review", local.head, "x")
        ops.clear()

        Synchronizer(local).push("review", "origin")
        assert ops == [
            BackendOperation.ABORT_MERGE,
            BackendOperation.FETCH_REF,
            BackendOperation.RESOLVE_REVISION,
            BackendOperation.REF_EXISTS,
            BackendOperation.PUSH_REF,
        ]

    def test_push_locks_do_not_accumulate(self, memory_remote):
        """Each short-lived repository leaves no lock behind after its push."""
        keys = []
        for _ in range(20):
            local = InMemoryAdapter.clone(memory_remote)
            Synchronizer(local).push("review", "origin")
            keys.append((local.repository_id, REF, "origin"))
            del local
        gc.collect()

        assert not any(key in _attempt_locks for key in keys)

    def test_push_merges_remote_only_keys(self, memory_remote, memory_local):
        second = memory_local.head
        first = NoteStore(memory_local).resolve("HEAD~1")
        NoteStore(memory_remote).set("review", first, "remote note")
        NoteStore(memory_local).set("review", second, "local note")

        Synchronizer(memory_local).push("review", "origin")

        expected = {first: "remote note", second: "local note"}
        assert memory_remote.notes_at(REF) == expected
        assert memory_local.notes_at(REF) == expected

    def test_push_combines_divergent_same_key(self, memory_remote, memory_local):
        commit = memory_local.head
        NoteStore(memory_remote).set("review", commit, "zebra\nshared\n")
        NoteStore(memory_local).set("review", commit, "apple\nshared\n")

        Synchronizer(memory_local).push("review", "origin")

        merged = "apple\nshared\nzebra\n"
        assert memory_remote.notes_at(REF) == {commit: merged}
        assert memory_local.notes_at(REF) == {commit: merged}

    def test_push_bootstraps_empty_namespace(self, memory_remote, memory_local):
        Synchronizer(memory_local).push("review", "origin")
        assert REF in memory_local.refs
        assert memory_remote.refs[REF] == memory_local.refs[REF]
        assert memory_remote.notes_at(REF) == {}

    def test_second_push_is_noop(self, memory_remote, memory_local):
        NoteStore(memory_local).set("review", memory_local.head, "x")
        sync = Synchronizer(memory_local)
        sync.push("review", "origin")
        pushed = memory_remote.refs[REF]
        sync.push("review", "origin")
        assert memory_remote.refs[REF] == pushed

    def test_empty_remote_rejected(self, memory_local):
        with pytest.raises(ValueError):
            Synchronizer(memory_local).push("review", "")

    def test_attempts_must_be_positive(self, memory_local):
        with pytest.raises(ValueError):
            Synchronizer(memory_local).push("review", "origin", attempts=0)

    def test_cancelled_context(self, memory_local):
        ctx = CallContext()
        ctx.cancel()
        with pytest.raises(OperationCancelledError):
            Synchronizer(memory_local).push("review", "origin", ctx=ctx)


class TestPushRetry:

    def test_retry_after_concurrent_write(self, memory_remote):
        commit = memory_remote.head
        writer = concurrent_writer(memory_remote, commit)
        local = InMemoryAdapter.clone(memory_remote, after=[writer])
        NoteStore(local).set("review", commit, "from this writer")

        sleeps = []
        Synchronizer(local, sleep=sleeps.append).push("review", "origin")

        assert len(writer.writes) == 1
        assert sleeps == [0.0]
        assert memory_remote.notes_at(REF) == {commit: "from other writer 1\nfrom this writer\n"}

    def test_retries_exhausted(self, memory_remote):
        commit = memory_remote.head
        writer = concurrent_writer(memory_remote, commit, every_time=True)
        local = InMemoryAdapter.clone(memory_remote, after=[writer])
        NoteStore(local).set("review", commit, "mine")

        sleeps = []
        with pytest.raises(PushRetriesExhaustedError) as exc_info:
            Synchronizer(local, sleep=sleeps.append).push("review", "origin")

        assert exc_info.value.attempts == 3
        assert "Push failed after 3 attempts" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, PushConflictError)
        assert sleeps == [0.0, 0.1]
        assert len(writer.writes) == 3

    def test_nested_push_from_other_repository(self, memory_remote):
        """Push locks are per repository: another clone may push meanwhile."""
        other = InMemoryAdapter.clone(memory_remote)
        NoteStore(other).set("review", other.head, "from other\n")
        pushed = []

        def race(operation, args, result):
            if operation is BackendOperation.FETCH_REF and not pushed:
                pushed.append(operation)
                Synchronizer(other).push("review", "origin")

        local = InMemoryAdapter.clone(memory_remote, after=[race])
        NoteStore(local).set("review", local.head, "from local\n")
        Synchronizer(local, sleep=lambda s: None).push("review", "origin")

        assert memory_remote.notes_at(REF) == {local.head: "from local\nfrom other\n"}

    def test_explicit_attempts(self, memory_remote):
        writer = concurrent_writer(memory_remote, memory_remote.head, every_time=True)
        local = InMemoryAdapter.clone(memory_remote, after=[writer])

        with pytest.raises(PushRetriesExhaustedError) as exc_info:
            Synchronizer(local, sleep=lambda s: None).push("review", "origin", attempts=1)
        assert exc_info.value.attempts == 1
        assert len(writer.writes) == 1


class TestMergeFailure:

    def test_conflict_rolls_back_and_is_not_retried(self, memory_remote, memory_local):
        commit = memory_local.head
        NoteStore(memory_remote).set("review", commit, "remote")
        NoteStore(memory_local).set("review", commit, "local")
        before = memory_local.refs[REF]
        remote_before = memory_remote.refs[REF]

        settings = NoteStoreSettings(merge_strategy="manual")
        with pytest.raises(MergeConflictError) as exc_info:
            Synchronizer(memory_local, settings).push("review", "origin")

        assert exc_info.value.ref == REF
        assert memory_local.refs[REF] == before
        assert memory_local.merges_in_progress == {}
        assert memory_remote.refs[REF] == remote_before

    def test_unknown_merge_failure_removes_new_ref(self, memory_remote, memory_local):
        NoteStore(memory_remote).set("review", memory_remote.head, "remote")
        merges = []

        def failing_merge(ref, strategy, source_ref, ctx=None):
            merges.append(source_ref)
            return CommandResult(1, "", "fatal: unexpected merge failure")

        memory_local.merge_ref = failing_merge
        with pytest.raises(BackendCommandError):
            Synchronizer(memory_local).push("review", "origin")

        assert merges == ["refs/remotes/origin/notes/review"]
        assert REF not in memory_local.refs


# =============================================================================
# Fetch
# =============================================================================

class TestFetch:

    def test_remote_wins(self, memory_remote, memory_local):
        commit = memory_local.head
        NoteStore(memory_remote).set("review", commit, "remote")
        NoteStore(memory_local).set("review", commit, "local")
        NoteStore(memory_local).set("review", "HEAD~1", "local only")

        Synchronizer(memory_local).fetch("review", "origin")

        assert memory_local.refs[REF] == memory_remote.refs[REF]
        assert memory_local.notes_at(REF) == {commit: "remote"}

    def test_missing_remote_ref_is_quiet(self, memory_local):
        Synchronizer(memory_local).fetch("review", "origin")
        assert REF not in memory_local.refs

    def test_unknown_remote_raises(self, memory_local):
        with pytest.raises(BackendCommandError) as exc_info:
            Synchronizer(memory_local).fetch("review", "nowhere")
        assert exc_info.value.operation == BackendOperation.FETCH_REF.value

    def test_empty_remote_rejected(self, memory_local):
        with pytest.raises(ValueError):
            Synchronizer(memory_local).fetch("review", "")

    def test_referenced_commits_fetched_in_one_call(self, memory_remote, memory_local):
        new_commit = memory_remote.commit("only on remote")
        NoteStore(memory_remote).set("review", new_commit, "x")
        NoteStore(memory_remote).set("review", "HEAD~1", "y")

        calls = []
        memory_local._after.append(
            lambda op, args, result: calls.append(args) if op is BackendOperation.FETCH_OBJECTS else None
        )
        Synchronizer(memory_local).fetch("review", "origin")

        assert len(calls) == 1
        assert set(calls[0][1:]) == set(memory_remote.notes_at(REF))
        assert new_commit in memory_local.commits

    def test_referenced_commit_failure_is_logged(self, memory_remote, memory_local, caplog):
        NoteStore(memory_remote).set("review", memory_remote.head, "x")
        memory_local.fetch_objects = lambda remote, ids, ctx=None: CommandResult(
            128, "", "fatal: remote error: upload-pack: not our ref"
        )

        with caplog.at_level(logging.WARNING, logger="notestore.sync"):
            Synchronizer(memory_local).fetch("review", "origin")

        assert memory_local.notes_at(REF) == memory_remote.notes_at(REF)
        assert "[Sync] Could not fetch 1 referenced commit(s)" in caplog.text
