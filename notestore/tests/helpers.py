"""
Real git helpers for tests.

Set up repositories with plain git commands, independently of the code
under test.
"""

import os
import subprocess
from pathlib import Path
from typing import Dict, Optional


GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test Author",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test Author",
    "GIT_COMMITTER_EMAIL": "test@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
}


def run_git(cwd: Path, *args: str, env: Optional[Dict[str, str]] = None) -> str:
    """Run git in cwd, fail the test on error, return stripped stdout."""
    full_env = dict(os.environ)
    full_env.update(GIT_ENV)
    if env:
        full_env.update(env)
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        env=full_env,
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0, f"git {' '.join(args)} failed: {result.stderr}"
    return result.stdout.strip()


def make_commit(repo: Path, name: str, timestamp: int) -> str:
    """Create a commit touching one file at a fixed committer timestamp."""
    (repo / name).write_text(f"{name}\n")
    run_git(repo, "add", name)
    date = f"{timestamp} +0000"
    run_git(
        repo, "commit", "-q", "-m", name,
        env={"GIT_AUTHOR_DATE": date, "GIT_COMMITTER_DATE": date},
    )
    return run_git(repo, "rev-parse", "HEAD")
