"""
Git process adapter.

Implements the backend capability set by running the git binary as a
subprocess in a repository directory.

Guarantees:
- One capability call = one observed unit (even when it spawns several
  git processes, e.g. write_note)
- Raw exit status / stdout / stderr returned, never interpreted here
- Note bodies are written as blobs and attached with `notes add -C`,
  so content round-trips byte for byte (no whitespace cleanup)
- Cancellation and deadlines terminate the process (SIGTERM, then
  SIGKILL) and raise OperationCancelledError
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .adapter import (
    AfterObserver,
    BackendAdapter,
    BackendOperation,
    BeforeObserver,
    CallContext,
    CommandResult,
)
from .config import DEFAULT_SETTINGS, NoteStoreSettings
from .errors import BackendCommandError, OperationCancelledError

logger = logging.getLogger(__name__)

# How often a running command checks its cancellation token
POLL_INTERVAL_SECONDS = 0.05

# Grace period between SIGTERM and SIGKILL
TERMINATE_GRACE_SECONDS = 5

# Process I/O codec; surrogateescape keeps non-UTF-8 bytes intact
ENCODING = "utf-8"
ENCODING_ERRORS = "surrogateescape"


class GitAdapter(BackendAdapter):
    """
    Backend adapter over the git command line.

    Stateless apart from configuration; safe to share between threads.
    """

    def __init__(
        self,
        repo_path: Optional[Union[str, Path]] = None,
        settings: NoteStoreSettings = DEFAULT_SETTINGS,
        before: Optional[Iterable[BeforeObserver]] = None,
        after: Optional[Iterable[AfterObserver]] = None,
    ):
        """
        Args:
            repo_path: Repository working directory (defaults to the CWD)
            settings: Git binary, identity and timeout configuration
            before: Observers called before each capability call
            after: Observers called after each capability call
        """
        super().__init__(before=before, after=after)
        self.repo_path = Path(repo_path) if repo_path is not None else None
        self.settings = settings

    @property
    def repository_id(self) -> str:
        return str((self.repo_path or Path.cwd()).resolve())

    # =========================================================================
    # Process execution
    # =========================================================================

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(
            GIT_AUTHOR_NAME=self.settings.author_name,
            GIT_AUTHOR_EMAIL=self.settings.author_email,
            GIT_COMMITTER_NAME=self.settings.author_name,
            GIT_COMMITTER_EMAIL=self.settings.author_email,
            GIT_TERMINAL_PROMPT="0",
        )
        return env

    def _effective_context(self, ctx: Optional[CallContext]) -> Optional[CallContext]:
        if ctx is None and self.settings.command_timeout is not None:
            return CallContext.with_timeout(self.settings.command_timeout)
        return ctx

    def _exec(
        self,
        operation: BackendOperation,
        args: Sequence[str],
        input: Optional[str] = None,
        ctx: Optional[CallContext] = None,
        strip: bool = True,
    ) -> CommandResult:
        """Run one git process and capture its result."""
        ctx = self._effective_context(ctx)
        if ctx is not None:
            ctx.check(operation.value)

        cmd = [self.settings.git_binary, *args]
        logger.debug(f"[Git] Executing: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(self.repo_path) if self.repo_path is not None else None,
                env=self._env(),
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise BackendCommandError(
                operation.value, 127, str(e), f"Failed to start {self.settings.git_binary}"
            ) from e

        # Bytes mode: text mode would translate \r and \r\n in note bodies
        raw_input = input.encode(ENCODING, ENCODING_ERRORS) if input is not None else None
        if ctx is None:
            raw_stdout, raw_stderr = process.communicate(raw_input)
        else:
            raw_stdout, raw_stderr = self._communicate_cancellable(process, operation, raw_input, ctx)
        stdout = raw_stdout.decode(ENCODING, ENCODING_ERRORS)
        stderr = raw_stderr.decode(ENCODING, ENCODING_ERRORS)

        exit_status = process.returncode
        if exit_status != 0:
            logger.debug(f"[Git] {args[0]} exited with code {exit_status}: {stderr.strip()}")

        if strip:
            stdout = stdout.strip()
        return CommandResult(exit_status=exit_status, stdout=stdout, stderr=stderr.strip())

    def _communicate_cancellable(
        self,
        process: subprocess.Popen,
        operation: BackendOperation,
        input: Optional[bytes],
        ctx: CallContext,
    ):
        pending_input = input
        while True:
            timeout = POLL_INTERVAL_SECONDS
            remaining = ctx.remaining()
            if remaining is not None:
                timeout = min(timeout, remaining) or POLL_INTERVAL_SECONDS
            try:
                return process.communicate(pending_input, timeout=timeout)
            except subprocess.TimeoutExpired:
                # Input is delivered on the first call only
                pending_input = None
                if ctx.cancelled or ctx.expired:
                    reason = "cancelled" if ctx.cancelled else "deadline exceeded"
                    self._terminate(process)
                    raise OperationCancelledError(operation.value, reason)

    def _terminate(self, process: subprocess.Popen) -> None:
        """SIGTERM first, SIGKILL if the process does not exit in time."""
        logger.info(f"[Git] Sending SIGTERM to PID {process.pid}")
        try:
            process.terminate()
            try:
                process.communicate(timeout=TERMINATE_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning(f"[Git] PID {process.pid} did not terminate, sending SIGKILL")
                process.kill()
                process.communicate()
        except ProcessLookupError:
            pass  # Process already gone

    def _run(
        self,
        operation: BackendOperation,
        args: Sequence[str],
        input: Optional[str] = None,
        ctx: Optional[CallContext] = None,
        strip: bool = True,
    ) -> CommandResult:
        return self._observed(
            operation, args, lambda: self._exec(operation, args, input=input, ctx=ctx, strip=strip)
        )

    # =========================================================================
    # Capabilities
    # =========================================================================

    def resolve_revision(self, expr: str, ctx: Optional[CallContext] = None) -> CommandResult:
        return self._run(BackendOperation.RESOLVE_REVISION, ["rev-parse", "--verify", expr], ctx=ctx)

    def read_note(self, ref: str, key: str, ctx: Optional[CallContext] = None) -> CommandResult:
        return self._run(
            BackendOperation.READ_NOTE, ["notes", "--ref", ref, "show", key], ctx=ctx, strip=False
        )

    def write_note(
        self, ref: str, key: str, content: str, ctx: Optional[CallContext] = None
    ) -> CommandResult:
        operation = BackendOperation.WRITE_NOTE

        def write() -> CommandResult:
            blob = self._exec(operation, ["hash-object", "-w", "--stdin"], input=content, ctx=ctx)
            if not blob.ok:
                return blob
            return self._exec(
                operation, ["notes", "--ref", ref, "add", "-f", "-C", blob.stdout, key], ctx=ctx
            )

        return self._observed(operation, ["notes", "--ref", ref, "add", "-f", key], write)

    def remove_note(self, ref: str, key: str, ctx: Optional[CallContext] = None) -> CommandResult:
        return self._run(BackendOperation.REMOVE_NOTE, ["notes", "--ref", ref, "remove", key], ctx=ctx)

    def list_note_keys(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        return self._run(BackendOperation.LIST_NOTE_KEYS, ["notes", "--ref", ref, "list"], ctx=ctx)

    def batch_get_timestamps(
        self, keys: Sequence[str], ctx: Optional[CallContext] = None
    ) -> CommandResult:
        # Keys go through stdin so the argument list never outgrows the OS limit;
        # keys naming commits absent locally (notes fetched without them) get no line
        return self._run(
            BackendOperation.BATCH_GET_TIMESTAMPS,
            ["log", "--no-walk=unsorted", "--ignore-missing", "--stdin", "--format=%H %ct"],
            input="".join(f"{key}\n" for key in keys),
            ctx=ctx,
        )

    def fetch_ref(
        self,
        remote: str,
        remote_ref: str,
        local_ref: str,
        force: bool = False,
        ctx: Optional[CallContext] = None,
    ) -> CommandResult:
        args: List[str] = ["fetch"]
        if force:
            args.append("--force")
        args += [remote, f"{remote_ref}:{local_ref}"]
        return self._run(BackendOperation.FETCH_REF, args, ctx=ctx)

    def fetch_objects(
        self, remote: str, object_ids: Sequence[str], ctx: Optional[CallContext] = None
    ) -> CommandResult:
        return self._run(BackendOperation.FETCH_OBJECTS, ["fetch", remote, *object_ids], ctx=ctx)

    def push_ref(self, remote: str, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        return self._run(BackendOperation.PUSH_REF, ["push", remote, f"{ref}:{ref}"], ctx=ctx)

    def merge_ref(
        self, ref: str, strategy: str, source_ref: str, ctx: Optional[CallContext] = None
    ) -> CommandResult:
        return self._run(
            BackendOperation.MERGE_REF,
            ["notes", "--ref", ref, "merge", "-s", strategy, source_ref],
            ctx=ctx,
        )

    def abort_merge(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        return self._run(BackendOperation.ABORT_MERGE, ["notes", "--ref", ref, "merge", "--abort"], ctx=ctx)

    def update_ref(self, ref: str, object_id: str, ctx: Optional[CallContext] = None) -> CommandResult:
        return self._run(BackendOperation.UPDATE_REF, ["update-ref", ref, object_id], ctx=ctx)

    def delete_ref(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        return self._run(BackendOperation.DELETE_REF, ["update-ref", "-d", ref], ctx=ctx)

    def ref_exists(self, ref: str, ctx: Optional[CallContext] = None) -> bool:
        """
        Check whether a ref exists locally.

        Raises:
            BackendCommandError: For failures other than "ref missing"
        """
        result = self._run(
            BackendOperation.REF_EXISTS, ["show-ref", "--verify", "--quiet", ref], ctx=ctx
        )
        if result.exit_status == 0:
            return True
        if result.exit_status == 1:
            return False
        raise BackendCommandError(
            BackendOperation.REF_EXISTS.value,
            result.exit_status,
            result.stderr,
            f"git show-ref failed while checking {ref}",
        )

    def initialize_empty_ref(self, ref: str, ctx: Optional[CallContext] = None) -> CommandResult:
        operation = BackendOperation.INITIALIZE_EMPTY_REF

        def initialize() -> CommandResult:
            tree = self._exec(operation, ["mktree"], input="", ctx=ctx)
            if not tree.ok:
                return tree
            commit = self._exec(
                operation, ["commit-tree", tree.stdout, "-m", f"Initialize {ref}"], ctx=ctx
            )
            if not commit.ok:
                return commit
            return self._exec(operation, ["update-ref", ref, commit.stdout], ctx=ctx)

        return self._observed(operation, [ref], initialize)
