"""Bash shell adapter implementation."""

from __future__ import annotations

import locale
import os
import shutil
import signal
import subprocess

from minion.errors import SpawnError

from .base import CommandResult, ShellAdapter

TIMEOUT_RETURNCODE = 124


class BashAdapter(ShellAdapter):
    """Adapter for command execution via ``bash``/``sh``."""

    def __init__(
        self,
        executable: str | None = None,
        *,
        fallback_to_sh: bool = True,
        kill_grace_seconds: float = 2.0,
    ) -> None:
        self.executable = executable or _default_executable(fallback_to_sh=fallback_to_sh)
        self.kill_grace_seconds = kill_grace_seconds

    @property
    def name(self) -> str:
        return os.path.basename(self.executable) or "bash"

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.log_request(command, cwd=cwd, timeout=timeout)
        started = self.monotonic_now()
        try:
            process = subprocess.Popen(
                [self.executable, "-c", command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,
            )
        except OSError as exc:
            raise SpawnError(f"could not launch {self.executable}: {exc}") from exc

        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_process_group(process, grace_seconds=self.kill_grace_seconds)
            stdout, stderr = _drain(process, timeout=self.kill_grace_seconds)
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=TIMEOUT_RETURNCODE,
                stdout=_normalize_output(stdout),
                stderr=_normalize_output(stderr),
                timed_out=True,
                duration_seconds=self.monotonic_now() - started,
            )
        else:
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=process.returncode,
                stdout=_normalize_output(stdout),
                stderr=_normalize_output(stderr),
                duration_seconds=self.monotonic_now() - started,
            )

        self.log_result(result)
        return result


def _kill_process_group(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    """SIGTERM the command's process group, then SIGKILL whatever is left."""
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        pass
    # Children may outlive the session leader; the group id stays valid until they exit.
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    process.wait()


def _drain(
    process: subprocess.Popen[bytes], *, timeout: float
) -> tuple[bytes | None, bytes | None]:
    try:
        return process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        # A descendant escaped the group and still holds the pipes open.
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                stream.close()
        return _as_bytes(exc.stdout), _as_bytes(exc.stderr)


def _as_bytes(payload: bytes | str | None) -> bytes | None:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return payload


def _default_executable(*, fallback_to_sh: bool) -> str:
    if shutil.which("bash"):
        return "bash"
    if fallback_to_sh and shutil.which("sh"):
        return "sh"
    return "bash"


def _normalize_output(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    for encoding in ("utf-8", "utf-8-sig", locale.getpreferredencoding(False)):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
