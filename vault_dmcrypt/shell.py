"""
Command Executor — run external tools with a timeout and captured output.
"""
import shutil
import asyncio
import logging
import time
from collections.abc import Iterable

from .exceptions import CommandError

logger = logging.getLogger("vault_dmcrypt.shell")

DEFAULT_TIMEOUT = 30.0


class CommandExecutor:
    """Runs commands through ``asyncio.create_subprocess_exec``.

    Arguments are never passed through a shell.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    async def execute(
        self,
        command: str,
        *args: str,
        timeout: float | None = None,
    ) -> str:
        """Run ``command args...`` and return its stdout.

        Raises:
            CommandError: If the command is missing, times out or exits
                non-zero (stderr is attached).
        """
        timeout = self.timeout if timeout is None else timeout
        logger.debug("Executing command %s %s", command, " ".join(args))
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                command, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise CommandError(command, f"failed to start: {err}") from err

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as err:
            proc.kill()
            await proc.wait()
            raise CommandError(
                command,
                f"timed out after {time.monotonic() - started:.1f}s",
            ) from err

        out = stdout.decode("utf-8", "replace")
        err_text = stderr.decode("utf-8", "replace")
        logger.debug(
            "Command %s finished with %s in %.2fs",
            command, proc.returncode, time.monotonic() - started,
        )
        if proc.returncode != 0:
            raise CommandError(
                command,
                f"exit status {proc.returncode}: {err_text.strip() or out.strip()}",
                returncode=proc.returncode,
                stderr=err_text,
            )
        return out

    def is_available(self, command: str) -> bool:
        return shutil.which(command) is not None

    def validate_commands(self, commands: Iterable[str]) -> None:
        missing = [cmd for cmd in commands if not self.is_available(cmd)]
        if missing:
            raise CommandError(
                ", ".join(missing), "required command(s) not found in PATH",
            )
