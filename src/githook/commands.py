"""
Units of work carried by task graph actions.

A command is an awaitable callable returning a :class:`CommandOutput`. It
signals failure by raising, usually :class:`ActionFailedError`.
"""

import asyncio
import contextlib
import os
import signal
from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel
from sanic.log import logger

from githook.exceptions import ActionFailedError


class CommandOutput(BaseModel):
    stdout: str = ""
    stderr: str = ""


class Command(Protocol):
    description: str

    async def __call__(self) -> CommandOutput: ...


class ShellCommand:
    def __init__(self, command: str, cwd: str | None = None):
        self.command = command
        self.cwd = cwd

    @property
    def description(self) -> str:
        return self.command

    def __repr__(self) -> str:
        return f"ShellCommand({self.command!r}, cwd={self.cwd!r})"

    async def __call__(self) -> CommandOutput:
        logger.debug("Executing %s (cwd=%s)", self.command, self.cwd)
        process = await asyncio.create_subprocess_shell(
            self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            start_new_session=True,
        )

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            logger.warning("Killing %s", self.command)
            # The shell leads its own session, so this reaches everything it spawned
            with contextlib.suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
            await process.wait()
            raise

        output = CommandOutput(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

        if process.returncode != 0:
            raise ActionFailedError(
                f"Command failed: {self.command}\n{output.stderr}".rstrip(),
                stdout=output.stdout,
                stderr=output.stderr,
                returncode=process.returncode,
            )

        return output


class ApiCall:
    """Wrap a coroutine function talking to an external service."""

    def __init__(self, description: str, func: Callable[[], Awaitable[Any]]):
        self.description = description
        self.func = func

    def __repr__(self) -> str:
        return f"ApiCall({self.description!r})"

    async def __call__(self) -> CommandOutput:
        response = await self.func()
        logger.debug("%s returned %s", self.description, response)
        return CommandOutput()
