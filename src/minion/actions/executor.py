"""Concrete actions against the task repository."""

from __future__ import annotations

import logging
import os
import tempfile

from minion.actions.git import GitRepo
from minion.agent.models import (
    ActionRequest,
    ActionResult,
    Finish,
    ReadFile,
    RunCommand,
    WriteFile,
)
from minion.errors import AccessDenied, CommandTimeout, FileIOError, NotFound
from minion.shell import ShellAdapter

LOGGER = logging.getLogger(__name__)


class ActionExecutor:
    """Runs read/write/command actions confined to ``repo_root``.

    Every path is canonicalized and checked against the repository root before
    the filesystem is touched. Failures are raised as
    :class:`minion.errors.ActionError` subclasses for the loop to record.
    """

    def __init__(
        self,
        repo_root: str,
        *,
        shell: ShellAdapter,
        command_timeout_seconds: float = 120.0,
        git: GitRepo | None = None,
    ) -> None:
        self.repo_root = os.path.realpath(repo_root)
        self.shell = shell
        self.command_timeout_seconds = command_timeout_seconds
        self.git = git or GitRepo(self.repo_root)

    def execute(self, request: ActionRequest) -> ActionResult:
        if isinstance(request, ReadFile):
            return self.read_file(request.path)
        if isinstance(request, WriteFile):
            return self.write_file(request.path, request.content)
        if isinstance(request, RunCommand):
            return self.run_command(request.command, timeout_seconds=request.timeout_seconds)
        if isinstance(request, Finish):
            raise TypeError("finish is handled by the agent loop, not executed")
        raise TypeError(f"unknown action request: {request!r}")

    def resolve(self, path: str) -> str:
        """Return the canonical absolute path for ``path`` inside the repository."""
        if not path or "\x00" in path:
            raise AccessDenied(f"invalid path: {path!r}")
        candidate = os.path.realpath(os.path.join(self.repo_root, path))
        if os.path.commonpath([self.repo_root, candidate]) != self.repo_root:
            LOGGER.warning("path_rejected", extra={"path": path, "resolved": candidate})
            raise AccessDenied(f"path escapes the repository root: {path}")
        return candidate

    def read_file(self, path: str) -> ActionResult:
        resolved = self.resolve(path)
        try:
            with open(resolved, encoding="utf-8", newline="") as handle:
                content = handle.read()
        except FileNotFoundError as exc:
            raise NotFound(f"file does not exist: {path}") from exc
        except IsADirectoryError as exc:
            raise FileIOError(f"path is a directory: {path}") from exc
        except UnicodeDecodeError as exc:
            raise FileIOError(f"file is not valid UTF-8 text: {path}") from exc
        except OSError as exc:
            raise FileIOError(f"could not read {path}: {exc.strerror or exc}") from exc
        LOGGER.info("file_read", extra={"path": path, "chars": len(content)})
        return ActionResult.ok(content)

    def write_file(self, path: str, content: str) -> ActionResult:
        resolved = self.resolve(path)
        if resolved == self.repo_root:
            raise FileIOError("cannot overwrite the repository root")
        directory = os.path.dirname(resolved)
        temp_path: str | None = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                prefix=f".{os.path.basename(resolved)}.", suffix=".tmp", dir=directory
            )
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            if os.path.exists(resolved):
                os.chmod(temp_path, os.stat(resolved).st_mode & 0o7777)
            os.replace(temp_path, resolved)
            temp_path = None
        except OSError as exc:
            raise FileIOError(f"could not write {path}: {exc.strerror or exc}") from exc
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                os.unlink(temp_path)
        LOGGER.info("file_written", extra={"path": path, "chars": len(content)})
        return ActionResult.ok(f"wrote {len(content)} characters to {path}")

    def run_command(self, command: str, *, timeout_seconds: float | None = None) -> ActionResult:
        # The configured timeout is also the ceiling for model-proposed timeouts.
        timeout = self.command_timeout_seconds
        if timeout_seconds is not None and 0 < timeout_seconds < timeout:
            timeout = timeout_seconds
        result = self.shell.execute(command, cwd=self.repo_root, timeout=timeout)
        if result.timed_out:
            error = CommandTimeout(f"command exceeded {timeout:g}s and was killed")
            return ActionResult.failure(
                error,
                output=result.stdout,
                stderr=result.stderr,
                duration_seconds=result.duration_seconds,
            )
        return ActionResult.ok(
            result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
            duration_seconds=result.duration_seconds,
        )

    def diff(self) -> str:
        return self.git.diff()

    def commit(self, message: str) -> str | None:
        return self.git.commit(message)
