"""Async subprocess helper shared by the backup and maintenance runners."""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional

logger = logging.getLogger(__name__)


class CommandResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str


class CommandError(RuntimeError):
    """Raised when a command cannot start, times out or exits non-zero with check=True."""


CommandRunner = Callable[..., Awaitable[CommandResult]]


async def run_command(
    args: List[str],
    env: Optional[Dict[str, str]] = None,
    timeout: float = 600.0,
    stdin_path: Optional[str] = None,
    stdout_path: Optional[str] = None,
    check: bool = True,
) -> CommandResult:
    """Run a command without a shell.

    Args:
        args: Program and arguments
        env: Extra environment variables merged over the current environment
        timeout: Seconds before the process is killed
        stdin_path: File fed to stdin
        stdout_path: File receiving stdout instead of capturing it
        check: Raise CommandError on a non-zero exit code

    Returns:
        CommandResult; stdout is empty when redirected to a file

    Raises:
        CommandError: If the command is missing, times out, or fails with check=True
    """
    process_env = {**os.environ, **env} if env else None
    stdin = open(stdin_path, 'rb') if stdin_path else None
    stdout = open(stdout_path, 'wb') if stdout_path else None
    try:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=stdin,
                stdout=stdout or asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
            )
        except OSError as e:
            raise CommandError(f'Cannot run {args[0]}: {e}') from e

        try:
            out, err = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise CommandError(f'Command {args[0]} timed out after {timeout}s') from None
    finally:
        if stdin:
            stdin.close()
        if stdout:
            stdout.close()

    result = CommandResult(
        returncode=process.returncode,
        stdout=(out or b'').decode('utf-8', errors='replace'),
        stderr=(err or b'').decode('utf-8', errors='replace'),
    )
    logger.debug(f'Command {args[0]} exited with {result.returncode}')
    if check and result.returncode != 0:
        raise CommandError(f'Command {args[0]} failed (rc={result.returncode}): {result.stderr.strip()}')
    return result
