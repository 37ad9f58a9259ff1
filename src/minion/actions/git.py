"""Minimal git plumbing for reporting and committing the agent's changes."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass

from minion.errors import GitError, SpawnError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class GitRepo:
    """Git working tree rooted at ``root``."""

    root: str
    user_name: str | None = None
    user_email: str | None = None
    timeout: float = 60.0

    def is_repository(self) -> bool:
        try:
            self._git("rev-parse", "--is-inside-work-tree")
        except GitError:
            return False
        return True

    def diff(self) -> str:
        """Unified diff of tracked changes plus the list of untracked files."""
        tracked = self._git("diff", "HEAD", "--no-color")
        untracked = self._git("ls-files", "--others", "--exclude-standard").splitlines()
        if not untracked:
            return tracked
        listing = "".join(f"?? {path}\n" for path in untracked)
        if tracked and not tracked.endswith("\n"):
            tracked += "\n"
        return tracked + listing

    def commit(self, message: str) -> str | None:
        """Stage everything and commit; returns the new HEAD sha, or None if clean."""
        self._git("add", "--all")
        staged = self._run("diff", "--cached", "--quiet")
        if staged.returncode == 0:
            LOGGER.info("git_commit_skipped", extra={"repo_root": self.root})
            return None
        if staged.returncode != 1:
            raise GitError(_describe_failure(("diff", "--cached", "--quiet"), staged))

        self._git(*self._identity_args(), "commit", "--no-verify", "-m", message)
        sha = self._git("rev-parse", "HEAD").strip()
        LOGGER.info("git_commit_created", extra={"repo_root": self.root, "sha": sha})
        return sha

    def _identity_args(self) -> list[str]:
        args: list[str] = []
        if self.user_name:
            args.extend(["-c", f"user.name={self.user_name}"])
        if self.user_email:
            args.extend(["-c", f"user.email={self.user_email}"])
        return args

    def _git(self, *args: str) -> str:
        process = self._run(*args)
        if process.returncode != 0:
            raise GitError(_describe_failure(args, process))
        return process.stdout

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                ["git", *args],
                capture_output=True,
                cwd=self.root,
                timeout=self.timeout,
                check=False,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"git {args[0]} timed out after {self.timeout:.1f}s") from exc
        except OSError as exc:
            raise SpawnError(f"could not launch git: {exc}") from exc


def _describe_failure(args: tuple[str, ...], process: subprocess.CompletedProcess[str]) -> str:
    detail = (process.stderr or process.stdout or "").strip().splitlines()
    first_line = detail[0][:240] if detail else "no output"
    return f"git {' '.join(args)} exited with {process.returncode}: {first_line}"
