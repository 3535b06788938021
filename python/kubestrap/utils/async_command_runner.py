"""
kubestrap/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic. Every external
tool kubestrap drives (openssl, ssh, scp, doctl) goes through `run_command`, so
failures surface uniformly as CommandError carrying the exit code and output.

Usage example:
    from kubestrap.utils.async_command_runner import run_command, CommandError

    try:
        out = await run_command(["openssl", "version"], retries=1)
    except CommandError as err:
        print(f"openssl unavailable: {err}")
"""

from __future__ import annotations

import asyncio
import os
from typing import Dict, List, Optional

from kubestrap.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a local command.

    Attributes:
        return_code: Exit code, or None if the process never started.
        stdout: Captured standard output (may be empty).
        stderr: Captured standard error (may be empty).
    """

    def __init__(
        self,
        message: str,
        return_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        """Combined stdout and stderr, for diagnostics."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


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
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries.

    When `sensitive=True`, the command line and its output are left out of the
    error message (they remain available on the CommandError attributes).

    Args:
        command: The command and arguments to execute.
        sensitive: If True, hides command details in the raised error message.
        env: Additional environment variables to add or override.
        cwd: Working directory for the command.
        input_data: If provided, passed to stdin.
        successful_return_codes: Return codes not treated as errors. Defaults to [0].
        retries: Total attempts. Defaults to 3.
        retry_delay: Delay in seconds between attempts. Defaults to 1.0.

    Returns:
        The captured stdout of the command on success.

    Raises:
        CommandError: If the executable is missing, or the command returns a code
            not in `successful_return_codes` on every attempt.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=cwd,
            )
        except OSError as exc:
            # Missing executable or unusable cwd: the process never started.
            raise CommandError(f"Could not start {command[0]!r}: {exc}") from exc

        stdout_bytes, stderr_bytes = await proc.communicate(
            input=input_data.encode() if input_data else None
        )
        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

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
                stdout=stdout_str,
                stderr=stderr_str,
            )

        return stdout_str

    return await _inner_run_command()
