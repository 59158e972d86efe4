from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from specstudio.process import ProcessHandle, ProcessSupervisor

logger = logging.getLogger(__name__)


class BackendExecutionError(RuntimeError):
    """Raised when an agent process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when an agent call exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process lifecycle fails."""


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def start(self, prompt: str, working_directory: Path) -> ProcessHandle:
        """Spawn the agent and return its handle; events arrive on ``handle.events``."""

    @abstractmethod
    def cancel(self, handle: ProcessHandle) -> None:
        """Ask a handle returned by ``start`` to terminate."""

    @abstractmethod
    async def complete(self, prompt: str, working_directory: Path) -> str:
        """Run the agent to completion and return its stdout text."""


class CommandLineBackend(AgentBackend):
    """Agent driven as a child process through a ProcessSupervisor."""

    default_binary = "agent"

    def __init__(
        self,
        binary: str | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        model: str | None = None,
        extra_args: list[str] | None = None,
        write_access: bool = False,
    ) -> None:
        self.binary = binary or self.default_binary
        self.supervisor = supervisor or ProcessSupervisor()
        self.model = model
        self.extra_args = list(extra_args or [])
        self.write_access = write_access

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return argv for one non-interactive run of the agent."""

    async def start(self, prompt: str, working_directory: Path) -> ProcessHandle:
        command = self.build_command(prompt)
        logger.info("Starting %s agent in %s", self.name, working_directory)
        return await self.supervisor.spawn(command[0], command[1:], working_directory)

    def cancel(self, handle: ProcessHandle) -> None:
        self.supervisor.cancel(handle)

    async def complete(self, prompt: str, working_directory: Path) -> str:
        handle = await self.start(prompt, working_directory)
        stdout: list[str] = []
        stderr: list[str] = []
        exit_code: int | None = None
        try:
            async for event in handle.events:
                if event.type == "output":
                    stdout.append(event.data)
                elif event.type == "error":
                    stderr.append(event.data)
                else:
                    exit_code = event.exit_code
        except asyncio.CancelledError:
            self.cancel(handle)
            handle.events.close()
            raise

        stderr_output = "".join(stderr).strip()
        if handle.spawn_failed:
            raise BackendProcessError(
                stderr_output or f"{self.name} agent could not be started.",
                backend=self.name,
                retriable=False,
            )
        if handle.truncated:
            raise BackendExecutionError(
                str(handle.failure),
                backend=self.name,
                exit_code=exit_code,
                retriable=False,
            )
        if exit_code != 0:
            raise BackendExecutionError(
                f"{self.name} agent failed with exit code {exit_code}: {stderr_output[-400:]}",
                backend=self.name,
                exit_code=exit_code,
                retriable=True,
            )
        return "".join(stdout)
