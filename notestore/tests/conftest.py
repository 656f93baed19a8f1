"""
Pytest configuration for the notestore test suite.

Fixtures:
- memory_remote / memory_local: in-memory repositories, local cloned from remote
- git_repo: real temporary git repository with one commit
- git_remote_pair: bare remote plus two clones of it

Tests marked `git` are skipped when no git binary is on PATH.
"""

import shutil

import pytest

from notestore.config import NoteStoreSettings
from notestore.memory_adapter import InMemoryAdapter
from notestore.tests.helpers import make_commit, run_git


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "git: marks tests that run the real git binary (skipped without git)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip real-git tests when git is not installed."""
    if shutil.which("git") is not None:
        return
    skip_git = pytest.mark.skip(reason="git binary not found on PATH")
    for item in items:
        if item.get_closest_marker("git") is not None:
            item.add_marker(skip_git)


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture
def fast_settings():
    """Settings with no push backoff so retry tests run instantly."""
    return NoteStoreSettings(push_backoff_seconds=0)


# =============================================================================
# In-memory repositories
# =============================================================================

@pytest.fixture
def memory_remote():
    """Remote repository with three commits."""
    remote = InMemoryAdapter()
    for message in ("first", "second", "third"):
        remote.commit(message)
    return remote


@pytest.fixture
def memory_local(memory_remote):
    """Local clone of memory_remote, reachable as "origin"."""
    return InMemoryAdapter.clone(memory_remote)


# =============================================================================
# Real git repositories
# =============================================================================

@pytest.fixture
def git_repo(tmp_path):
    """Non-bare git repository with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init", "-q")
    make_commit(repo, "README", 1_700_000_000)
    return repo


@pytest.fixture
def git_remote_pair(tmp_path):
    """
    Bare remote with one commit and two independent clones.

    Returns:
        Tuple of (remote_path, clone_a, clone_b)
    """
    seed = tmp_path / "seed"
    seed.mkdir()
    run_git(seed, "init", "-q")
    make_commit(seed, "README", 1_700_000_000)

    remote = tmp_path / "remote.git"
    run_git(tmp_path, "clone", "-q", "--bare", str(seed), str(remote))

    clone_a = tmp_path / "a"
    clone_b = tmp_path / "b"
    run_git(tmp_path, "clone", "-q", str(remote), str(clone_a))
    run_git(tmp_path, "clone", "-q", str(remote), str(clone_b))
    return remote, clone_a, clone_b
