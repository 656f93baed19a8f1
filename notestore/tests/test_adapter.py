"""
Tests for the adapter contract pieces and the in-memory backend.
"""

import time

import pytest

from notestore.adapter import BackendOperation, CallContext, CommandResult
from notestore.errors import OperationCancelledError
from notestore.memory_adapter import (
    InMemoryAdapter,
    combine_cat_sort_uniq,
    combine_union,
)


# =============================================================================
# Contract types
# =============================================================================

class TestCommandResult:

    def test_ok(self):
        assert CommandResult(0).ok
        assert not CommandResult(1).ok

    def test_combined_includes_both_streams(self):
        combined = CommandResult(1, stdout="out", stderr="err").combined
        assert "out" in combined and "err" in combined


class TestCallContext:

    def test_fresh_context_passes(self):
        CallContext().check("read_note")

    def test_cancel(self):
        ctx = CallContext()
        ctx.cancel()
        assert ctx.cancelled
        with pytest.raises(OperationCancelledError) as exc_info:
            ctx.check("read_note")
        assert exc_info.value.reason == "cancelled"

    def test_deadline(self):
        ctx = CallContext.with_timeout(0.01)
        time.sleep(0.02)
        assert ctx.expired
        assert ctx.remaining() == 0.0
        with pytest.raises(OperationCancelledError) as exc_info:
            ctx.check("push_ref")
        assert exc_info.value.reason == "deadline exceeded"

    def test_no_deadline(self):
        assert CallContext().remaining() is None


# =============================================================================
# Merge strategies
# =============================================================================

class TestCombiners:

    def test_cat_sort_uniq(self):
        assert combine_cat_sort_uniq("b\na\n", "c\na\n") == "a\nb\nc\n"

    def test_cat_sort_uniq_drops_empty_lines(self):
        assert combine_cat_sort_uniq("x\n\n", None) == "x\n"
        assert combine_cat_sort_uniq("", "") is None

    def test_union(self):
        assert combine_union("a\n", "b\n") == "a\nb\n"
        assert combine_union(None, "b") == "b"


# =============================================================================
# In-memory repository
# =============================================================================

class TestInMemoryAdapter:

    def test_resolution(self):
        repo = InMemoryAdapter()
        first = repo.commit("one")
        second = repo.commit("two")

        assert repo.resolve_revision("HEAD").stdout == second
        assert repo.resolve_revision("HEAD~1").stdout == first
        assert repo.resolve_revision("HEAD^").stdout == first
        assert repo.resolve_revision(first[:8]).stdout == first
        assert repo.resolve_revision("HEAD~5").exit_status == 128

    def test_timestamps_in_one_call(self):
        repo = InMemoryAdapter()
        a = repo.commit("a", timestamp=100)
        b = repo.commit("b", timestamp=200)
        result = repo.batch_get_timestamps([b, a])
        assert result.stdout.splitlines() == [f"{b} 200", f"{a} 100"]

    def test_timestamps_skip_commits_absent_locally(self):
        repo = InMemoryAdapter()
        a = repo.commit("a", timestamp=100)
        result = repo.batch_get_timestamps(["f" * 40, a])
        assert result.ok
        assert result.stdout.splitlines() == [f"{a} 100"]

    def test_merge_fast_forward_and_up_to_date(self):
        repo = InMemoryAdapter()
        head = repo.commit()
        repo.write_note("refs/notes/a", head, "x")
        repo.update_ref("refs/notes/b", repo.refs["refs/notes/a"])

        assert repo.merge_ref("refs/notes/b", "cat_sort_uniq", "refs/notes/a").stdout == "Already up to date."

        repo.write_note("refs/notes/a", head, "y")
        result = repo.merge_ref("refs/notes/b", "cat_sort_uniq", "refs/notes/a")
        assert result.ok
        assert repo.refs["refs/notes/b"] == repo.refs["refs/notes/a"]

    def test_push_rejects_non_fast_forward(self, memory_remote, memory_local):
        memory_remote.write_note("refs/notes/x", memory_remote.head, "remote")
        memory_local.write_note("refs/notes/x", memory_local.head, "local")

        result = memory_local.push_ref("origin", "refs/notes/x")
        assert result.exit_status == 1
        assert "[rejected]" in result.stderr

    def test_capabilities_check_context(self, memory_local):
        ctx = CallContext()
        ctx.cancel()
        with pytest.raises(OperationCancelledError) as exc_info:
            memory_local.list_note_keys("refs/notes/x", ctx=ctx)
        assert exc_info.value.operation == BackendOperation.LIST_NOTE_KEYS.value
