"""Run external media commands (ffmpeg) under a cancel token."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence

from renderfleet.exceptions import ExportCancelledError
from renderfleet.export.cancellation import CancelToken, ProcessTerminator

logger = logging.getLogger(__name__)

# stderr kept for diagnostics is capped to the tail
STDERR_TAIL_BYTES = 64 * 1024


@dataclass
class CommandResult:
    """Completed command execution."""

    command: tuple[str, ...]
    returncode: int
    stderr: str
    duration: float


def minimal_env() -> dict[str, str]:
    """Environment for transcoder subprocesses: only what locating binaries needs."""
    env: dict[str, str] = {}
    for key in ("PATH", "DYLD_LIBRARY_PATH", "LD_LIBRARY_PATH"):
        value = os.environ.get(key)
        if value:
            env[key] = value
    return env


async def run_command(
    command: Sequence[str],
    *,
    cancel_token: Optional[CancelToken] = None,
    kill_grace_s: float = 1.0,
    on_stdout_line: Optional[Callable[[str], None]] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> CommandResult:
    """Execute ``command`` and wait for it.

    Cancelling the token sends SIGTERM, then SIGKILL after ``kill_grace_s``.
    The return code is reported, not checked; callers decide what a non-zero
    exit means.

    Raises:
        ExportCancelledError: If the token was cancelled before or during the run
        FileNotFoundError: If the executable does not exist
    """
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    start = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
        cwd=cwd,
    )

    terminate_task: Optional[asyncio.Task] = None

    def on_cancel() -> None:
        nonlocal terminate_task
        terminator = ProcessTerminator(
            f"{os.path.basename(command[0])}[{proc.pid}]",
            request_stop=proc.terminate,
            force_kill=proc.kill,
            is_alive=lambda: proc.returncode is None,
            grace_s=kill_grace_s,
        )
        terminate_task = asyncio.ensure_future(terminator.terminate())

    remove_callback = cancel_token.add_callback(on_cancel) if cancel_token is not None else None

    async def read_stdout() -> None:
        assert proc.stdout is not None
        async for raw in proc.stdout:
            if on_stdout_line is not None:
                on_stdout_line(raw.decode("utf-8", errors="replace").strip())

    async def read_stderr() -> bytes:
        assert proc.stderr is not None
        tail = b""
        async for raw in proc.stderr:
            tail = (tail + raw)[-STDERR_TAIL_BYTES:]
        return tail

    try:
        _, stderr = await asyncio.gather(read_stdout(), read_stderr())
        returncode = await proc.wait()
    finally:
        if remove_callback is not None:
            remove_callback()
        if terminate_task is not None:
            await terminate_task
        if proc.returncode is None:
            # Awaiting task was cancelled; never leave the child behind
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    result = CommandResult(
        command=tuple(command),
        returncode=returncode,
        stderr=stderr.decode("utf-8", errors="replace"),
        duration=time.monotonic() - start,
    )

    if cancel_token is not None and cancel_token.cancelled:
        logger.info(f"[COMMAND] {command[0]} stopped by cancellation after {result.duration:.1f}s")
        raise ExportCancelledError(cancel_token.reason)

    logger.debug(f"[COMMAND] {command[0]} exited {returncode} in {result.duration:.2f}s")
    return result
