from __future__ import annotations

import asyncio
import codecs
import logging
import os
from pathlib import Path

from specstudio.channel import StreamChannel
from specstudio.errors import SpawnFailure, StreamTruncated
from specstudio.models import StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
READ_CHUNK_BYTES = 4096
SPAWN_FAILED_EXIT_CODE = -1

PLAIN_OUTPUT_ENV = {
    "FORCE_COLOR": "0",
    "NO_COLOR": "1",
    "TERM": "dumb",
}


def plain_output_env(base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env.update(PLAIN_OUTPUT_ENV)
    return env


class ProcessHandle:
    """One spawned process, its event channel, and its cancellation state."""

    def __init__(self, command: list[str], channel: StreamChannel) -> None:
        self.command = command
        self.events = channel
        self.failure: SpawnFailure | StreamTruncated | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._pump: asyncio.Task[int] | None = None
        self._exit_code: int | None = None
        self._cancel_requested = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def spawn_failed(self) -> bool:
        return isinstance(self.failure, SpawnFailure)

    @property
    def truncated(self) -> bool:
        return isinstance(self.failure, StreamTruncated)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def running(self) -> bool:
        return self._process is not None and self._exit_code is None

    async def wait(self) -> int:
        if self._pump is not None:
            return await asyncio.shield(self._pump)
        return self._exit_code if self._exit_code is not None else SPAWN_FAILED_EXIT_CODE


class ProcessSupervisor:
    def __init__(
        self,
        *,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        env: dict[str, str] | None = None,
    ) -> None:
        self.max_output_bytes = max_output_bytes
        self.base_env = env

    async def spawn(
        self,
        command: str,
        args: list[str],
        working_directory: Path | str | None = None,
    ) -> ProcessHandle:
        channel = StreamChannel()
        handle = ProcessHandle([command, *args], channel)
        cwd = str(working_directory) if working_directory is not None else None
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                env=plain_output_env(self.base_env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            failure = SpawnFailure(f"Failed to start {command}: {exc}")
            logger.warning("%s", failure)
            handle.failure = failure
            handle._exit_code = SPAWN_FAILED_EXIT_CODE
            channel.publish(StreamEvent.error(str(failure)))
            channel.publish(StreamEvent.complete(SPAWN_FAILED_EXIT_CODE))
            return handle

        logger.debug("Spawned pid=%s: %s", process.pid, command)
        handle._process = process
        handle._pump = asyncio.create_task(self._pump(handle, process))
        return handle

    def cancel(self, handle: ProcessHandle) -> None:
        handle._cancel_requested = True
        self._terminate(handle)

    @staticmethod
    def _terminate(handle: ProcessHandle) -> None:
        process = handle._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def _pump(self, handle: ProcessHandle, process: asyncio.subprocess.Process) -> int:
        budget = {"remaining": self.max_output_bytes}
        readers = []
        if process.stdout is not None:
            readers.append(self._read_stream(handle, process.stdout, "output", budget))
        if process.stderr is not None:
            readers.append(self._read_stream(handle, process.stderr, "error", budget))
        try:
            await asyncio.gather(*readers)
        except OSError as exc:
            logger.warning("pid=%s: stream read failed: %s", process.pid, exc)
            handle.events.publish(StreamEvent.error(f"Stream read failed: {exc}"))
            self._terminate(handle)
        exit_code = await process.wait()
        handle._exit_code = exit_code
        logger.debug("pid=%s exited with code %s", process.pid, exit_code)
        handle.events.publish(StreamEvent.complete(exit_code))
        return exit_code

    async def _read_stream(
        self,
        handle: ProcessHandle,
        stream: asyncio.StreamReader,
        event_type: str,
        budget: dict[str, int],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail and handle.failure is None:
                    handle.events.publish(StreamEvent(event_type, tail))  # type: ignore[arg-type]
                return
            if handle.failure is not None:
                # Keep draining so the child never blocks on a full pipe.
                continue
            allowed = max(budget["remaining"], 0)
            budget["remaining"] -= len(chunk)
            if budget["remaining"] < 0:
                head = decoder.decode(chunk[:allowed])
                if head:
                    handle.events.publish(StreamEvent(event_type, head))  # type: ignore[arg-type]
                failure = StreamTruncated(self.max_output_bytes)
                logger.warning("pid=%s: %s", handle.pid, failure)
                handle.failure = failure
                handle.events.publish(StreamEvent.error(str(failure)))
                self._terminate(handle)
                continue
            text = decoder.decode(chunk)
            if text:
                handle.events.publish(StreamEvent(event_type, text))  # type: ignore[arg-type]
