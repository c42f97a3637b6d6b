"""
ahura/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic and an optional
wall-clock timeout. Commands are always spawned with an argv list, never through
a local shell. Secrets belong in `input_data` (stdin) or `env`, never in argv.

Optionally, allows passing a custom error_parser callback that can parse stderr
for known errors and return a short user-friendly message.

Usage example:
    from ahura.utils.async_command_runner import run_command, CommandError

    def apt_lock_parser(stderr_str: str) -> Optional[str]:
        if "could not get lock" in stderr_str.lower():
            return "Another apt process holds the dpkg lock."
        return None

    try:
        output = await run_command(
            ["ssh", "node-1", "true"],
            timeout=30,
            error_parser=apt_lock_parser,
        )
        print(output.stdout)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from ahura.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr; kept out of `message` for sensitive commands.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    """The command did not finish within its timeout and was killed."""

    def __init__(self, message: str, timeout: float) -> None:
        super().__init__(message)
        self.timeout = timeout


class CommandOutput(BaseModel):
    stdout: str
    stderr: str
    return_code: int


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 1,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
    suppress_env_vars: Optional[List[str]] = None,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> CommandOutput:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries,
    an optional per-attempt timeout and an optional error parser callback.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_parser` is given, we pass stderr to it, and if it returns
    a non-None string, we raise that as a short user-friendly message. Otherwise, we
    raise the usual "Command failed" message.

    When `sensitive=True`, we omit the command, stdout, and stderr from the error
    message (stderr is still available on the exception's `stderr` attribute).

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override at spawn time.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, written to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            Total attempts. Defaults to 1 (no retry).
        retry_delay (float):
            Delay in seconds between retries. Defaults to 1.0.
        timeout (Optional[float]):
            Seconds before an attempt is killed. None means no limit.
        suppress_env_vars (Optional[List[str]]):
            A list of environment variables to remove from the environment.
        error_parser (Optional[Callable[[str], Optional[str]]]):
            A callback that receives stderr. If it returns a non-None value, we
            raise a short CommandError with that message.

    Returns:
        CommandOutput: stdout, stderr and the return code.

    Raises:
        CommandTimeoutError: If the last attempt exceeds `timeout`.
        CommandError: If the command fails after all retries or returns a code not in
            `successful_return_codes`. Also if `error_parser` returns a message.
    """
    accepted = successful_return_codes or [0]

    @async_retry(
        retries=retries,
        delay=retry_delay,
        retry_on=(CommandError,),
    )
    async def _inner_run_command() -> CommandOutput:
        # Build environment
        if env is None and not suppress_env_vars:
            proc_env = None
        else:
            proc_env = os.environ.copy()
            if suppress_env_vars:
                for var in suppress_env_vars:
                    proc_env.pop(var, None)
            if env:
                proc_env.update(env)

        stdin = (
            asyncio.subprocess.PIPE
            if input_data is not None
            else asyncio.subprocess.DEVNULL
        )

        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
        )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(
                    input=input_data.encode() if input_data is not None else None
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await _terminate(proc)
            name = "command" if sensitive else repr(command[0])
            raise CommandTimeoutError(
                f"Timed out after {timeout}s running {name}.", timeout or 0.0
            ) from None
        except asyncio.CancelledError:
            await _terminate(proc)
            raise

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()
        return_code = proc.returncode if proc.returncode is not None else -1

        if return_code not in accepted:
            short_message = error_parser(stderr_str) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, return_code, stderr_str)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )

            raise CommandError(
                f"Command failed with return code {return_code}.{detail}",
                return_code,
                stderr_str,
            )

        return CommandOutput(
            stdout=stdout_str, stderr=stderr_str, return_code=return_code
        )

    return await _inner_run_command()
