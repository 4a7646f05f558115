"""
k3snode/utils/async_command_runner.py

Reusable asynchronous runners for local subprocesses:

  - run_command: run to completion and return captured output, with optional
    retries and an optional merge of stderr into stdout.
  - stream_command: deliver stdout and stderr line by line to callbacks while
    the process runs. Both pipes are drained concurrently and joined together
    with the process exit before returning.

Both raise CommandError when the exit code is not in `successful_return_codes`.
The SSH client builds its `ssh` invocations on top of these.

Usage example:
    from k3snode.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["kubectl", "get", "nodes"], retries=1)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
from typing import Callable, Dict, List, Optional

from k3snode.utils.async_retry import async_retry

LineCallback = Callable[[str], None]

# Upper bound for a single streamed line.
STREAM_LINE_LIMIT = 1024 * 1024


class CommandError(Exception):
    """Represents a failure when executing a command.

    Attributes:
        return_code (Optional[int]): The exit code if available.
        command (Optional[str]): The (masked) command text, when known.
        outputs (List[str]): Outputs of commands of the same batch that
            completed before this one failed.
        stderr (str): Captured stderr, if any.
    """

    def __init__(
        self,
        message: str,
        return_code: Optional[int] = None,
        *,
        command: Optional[str] = None,
        outputs: Optional[List[str]] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.command = command
        self.outputs: List[str] = list(outputs or [])
        self.stderr = stderr


class SSHConnectionError(CommandError):
    """The SSH connection itself could not be established."""


class RemoteResultError(CommandError):
    """A remote read returned an unexpected number of results."""


class OutputLimitError(CommandError):
    """A streamed output line was longer than STREAM_LINE_LIMIT."""


def _build_env(
    env: Optional[Dict[str, str]], suppress_env_vars: Optional[List[str]]
) -> Optional[Dict[str, str]]:
    if env is None and not suppress_env_vars:
        return None
    proc_env = os.environ.copy()
    if suppress_env_vars:
        for var in suppress_env_vars:
            proc_env.pop(var, None)
    if env:
        proc_env.update(env)
    return proc_env


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    suppress_env_vars: Optional[List[str]] = None,
    merge_stderr: bool = False,
    strip_output: bool = True,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries.

    When `sensitive=True`, the command line, stdout and stderr are omitted from
    the raised error message (stderr is still attached as an attribute).

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            Total attempts. Defaults to 3.
        retry_delay (float):
            Delay in seconds between retries. Defaults to 1.0.
        suppress_env_vars (Optional[List[str]]):
            Environment variables to remove from the inherited environment.
        merge_stderr (bool):
            If True, stderr is redirected into stdout and returned with it.
        strip_output (bool):
            If True (default), surrounding whitespace is stripped from the result.

    Returns:
        str: The captured stdout (plus stderr when merged) on success.

    Raises:
        CommandError: If the command fails after all retries.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    @async_retry(retries=retries, delay=retry_delay)
    async def _inner_run_command() -> str:
        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=(
                    asyncio.subprocess.STDOUT
                    if merge_stderr
                    else asyncio.subprocess.PIPE
                ),
                env=_build_env(env, suppress_env_vars),
                cwd=cwd,
            )
        except OSError as exc:
            raise CommandError(f"Failed to start command: {exc}") from exc

        stdout_bytes, stderr_bytes = await proc.communicate(
            input=input_data.encode() if input_data else None
        )
        stdout_str = stdout_bytes.decode(errors="replace") if stdout_bytes else ""
        stderr_str = stderr_bytes.decode(errors="replace") if stderr_bytes else ""
        if strip_output:
            stdout_str = stdout_str.strip()
            stderr_str = stderr_str.strip()

        if proc.returncode not in ok_codes:
            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )
            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                stderr=stderr_str or (stdout_str if merge_stderr else ""),
            )

        return stdout_str

    return await _inner_run_command()


async def _drain(reader: Optional[asyncio.StreamReader], callback: LineCallback) -> None:
    if reader is None:
        return
    while True:
        try:
            line = await reader.readline()
        except (ValueError, asyncio.LimitOverrunError) as exc:
            raise OutputLimitError(
                f"Output line exceeds {STREAM_LINE_LIMIT} bytes: {exc}"
            ) from exc
        if not line:
            return
        callback(line.decode(errors="replace").rstrip("\r\n"))


async def _reap(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def stream_command(
    command: List[str],
    *,
    on_stdout: LineCallback,
    on_stderr: LineCallback,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    successful_return_codes: Optional[List[int]] = None,
) -> None:
    """
    Run a local command, feeding each stdout line to `on_stdout` and each stderr
    line to `on_stderr` as they arrive.

    Ordering is preserved within a stream; lines of the two streams may
    interleave in any order. The call returns only after both pipes reached EOF
    and the process has exited. No retries.

    If a drain fails (a callback raises or a line is too long), the other drain
    is cancelled and the process killed and reaped before the error propagates.

    Raises:
        CommandError: If the process cannot be started or exits with a code not
            in `successful_return_codes` (default [0]).
        OutputLimitError: If an output line exceeds STREAM_LINE_LIMIT.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_build_env(env, None),
            limit=STREAM_LINE_LIMIT,
        )
    except OSError as exc:
        raise CommandError(f"Failed to start command: {exc}") from exc

    drains = [
        asyncio.ensure_future(_drain(proc.stdout, on_stdout)),
        asyncio.ensure_future(_drain(proc.stderr, on_stderr)),
    ]
    try:
        await asyncio.gather(*drains)
    except BaseException:
        for task in drains:
            task.cancel()
        await asyncio.gather(*drains, return_exceptions=True)
        await _reap(proc)
        raise
    return_code = await proc.wait()

    if return_code not in ok_codes:
        detail = "" if sensitive else f"\nCommand: {' '.join(command)}"
        raise CommandError(
            f"Command failed with return code {return_code}.{detail}",
            return_code,
        )
