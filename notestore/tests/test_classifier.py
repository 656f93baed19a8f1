"""
Tests for backend error classification.

Verifies that raw (exit status, stderr) pairs map to the right ErrorKind
without running any backend. All tests are pure and fast.
"""

import pytest

from notestore.adapter import BackendOperation, CommandResult
from notestore.classifier import (
    ErrorKind,
    classify,
    is_benign,
    is_environment_failure,
    is_retryable,
)


def failed(stderr: str, exit_status: int = 128, stdout: str = "") -> CommandResult:
    return CommandResult(exit_status=exit_status, stdout=stdout, stderr=stderr)


# =============================================================================
# Note reads
# =============================================================================

class TestReadClassification:
    """Note not found vs invalid commit ref."""

    def test_missing_note_is_not_found(self):
        result = failed("error: no note found for object 3f2a1b.", exit_status=1)
        assert classify(BackendOperation.READ_NOTE, result) == ErrorKind.NOTE_NOT_FOUND

    def test_not_found_requires_exit_status_one(self):
        """The same text with another exit status is not trusted."""
        result = failed("error: no note found for object 3f2a1b.", exit_status=2)
        assert classify(BackendOperation.READ_NOTE, result) == ErrorKind.UNCLASSIFIED

    def test_unresolvable_key_is_invalid_ref(self):
        result = failed("fatal: failed to resolve 'nope' as a valid ref.")
        assert classify(BackendOperation.READ_NOTE, result) == ErrorKind.INVALID_COMMIT_REF

    def test_unknown_text_is_unclassified(self):
        result = failed("fatal: something odd happened", exit_status=1)
        assert classify(BackendOperation.READ_NOTE, result) == ErrorKind.UNCLASSIFIED


class TestResolveClassification:

    @pytest.mark.parametrize("stderr", [
        "fatal: Needed a single revision",
        "fatal: ambiguous argument 'xyz': unknown revision or path not in the working tree.",
        "fatal: bad revision 'HEAD~99'",
    ])
    def test_invalid_revision_patterns(self, stderr):
        assert classify(BackendOperation.RESOLVE_REVISION, failed(stderr)) == ErrorKind.INVALID_COMMIT_REF


# =============================================================================
# Delete / list
# =============================================================================

class TestRemoveAndListClassification:

    def test_object_without_note_is_benign(self):
        result = failed("error: Object 3f2a1b has no note", exit_status=1)
        kind = classify(BackendOperation.REMOVE_NOTE, result)
        assert kind == ErrorKind.DELETE_TARGET_MISSING
        assert is_benign(kind)

    def test_missing_notes_ref(self):
        result = failed("error: bad notes ref refs/notes/missing", exit_status=1)
        assert classify(BackendOperation.LIST_NOTE_KEYS, result) == ErrorKind.NOTES_REF_NOT_FOUND


# =============================================================================
# Synchronization
# =============================================================================

class TestSyncClassification:
    """Fetch, push and merge diagnostics."""

    def test_fetch_missing_remote_ref(self):
        result = failed("fatal: couldn't find remote ref refs/notes/review")
        assert classify(BackendOperation.FETCH_REF, result) == ErrorKind.REMOTE_REF_NOT_FOUND

    def test_fetch_silent_exit_one_is_missing_remote_ref(self):
        result = failed("", exit_status=1)
        assert classify(BackendOperation.FETCH_REF, result) == ErrorKind.REMOTE_REF_NOT_FOUND

    def test_fetch_from_unknown_remote_is_unclassified(self):
        result = failed(
            "fatal: 'nowhere' does not appear to be a git repository\n"
            "fatal: Could not read from remote repository."
        )
        assert classify(BackendOperation.FETCH_REF, result) == ErrorKind.UNCLASSIFIED

    @pytest.mark.parametrize("stderr", [
        " ! [rejected]        refs/notes/x -> refs/notes/x (fetch first)",
        " ! [rejected]        refs/notes/x -> refs/notes/x (non-fast-forward)",
        "hint: Updates were rejected because the tip of your current branch is behind",
    ])
    def test_push_conflict_patterns(self, stderr):
        kind = classify(BackendOperation.PUSH_REF, failed(stderr, exit_status=1))
        assert kind == ErrorKind.PUSH_CONFLICT
        assert is_retryable(kind)

    def test_push_hook_rejection_is_not_a_conflict(self):
        result = failed(" ! [remote rejected] refs/notes/x -> refs/notes/x (pre-receive hook declined)", 1)
        assert classify(BackendOperation.PUSH_REF, result) == ErrorKind.UNCLASSIFIED

    def test_merge_already_current_even_on_success(self):
        result = CommandResult(exit_status=0, stdout="Already up to date.")
        kind = classify(BackendOperation.MERGE_REF, result)
        assert kind == ErrorKind.MERGE_ALREADY_CURRENT
        assert is_benign(kind)

    def test_merge_conflict(self):
        result = failed("Automatic notes merge failed.", exit_status=1,
                        stdout="CONFLICT (content): Merge conflict in notes for object abc")
        kind = classify(BackendOperation.MERGE_REF, result)
        assert kind == ErrorKind.MERGE_CONFLICT
        assert not is_retryable(kind)


# =============================================================================
# Environment and general rules
# =============================================================================

class TestGeneralRules:

    def test_environment_failures_are_never_specific(self):
        result = failed("fatal: not a git repository (or any of the parent directories): .git")
        assert is_environment_failure(result)
        for operation in BackendOperation:
            assert classify(operation, result) == ErrorKind.UNCLASSIFIED

    def test_success_is_unclassified(self):
        assert classify(BackendOperation.READ_NOTE, CommandResult(0, "note")) == ErrorKind.UNCLASSIFIED

    def test_operations_without_classifier(self):
        result = failed("error: no note found for object abc", exit_status=1)
        assert classify(BackendOperation.UPDATE_REF, result) == ErrorKind.UNCLASSIFIED
