import asyncio
import sys
from pathlib import Path

from specstudio.models import StreamEvent
from specstudio.process import SPAWN_FAILED_EXIT_CODE, ProcessSupervisor


async def _drain(supervisor: ProcessSupervisor, args: list[str], cwd: Path) -> list[StreamEvent]:
    handle = await supervisor.spawn(sys.executable, args, cwd)
    return [event async for event in handle.events]


def test_spawn_streams_stdout_and_stderr_then_completes(tmp_path: Path) -> None:
    script = "import sys; print('hello'); print('oops', file=sys.stderr); sys.exit(3)"
    events = asyncio.run(_drain(ProcessSupervisor(), ["-c", script], tmp_path))

    output = "".join(event.data for event in events if event.type == "output")
    errors = "".join(event.data for event in events if event.type == "error")
    assert "hello" in output
    assert "oops" in errors
    assert events[-1].type == "complete"
    assert events[-1].exit_code == 3
    assert sum(1 for event in events if event.type == "complete") == 1


def test_spawn_runs_in_working_directory_with_plain_output_env(tmp_path: Path) -> None:
    script = "import os; print(os.getcwd()); print(os.environ.get('NO_COLOR'))"
    events = asyncio.run(_drain(ProcessSupervisor(), ["-c", script], tmp_path))

    output = "".join(event.data for event in events if event.type == "output")
    assert str(tmp_path.resolve()) in output
    assert output.strip().splitlines()[-1] == "1"


def test_spawn_failure_reports_error_and_complete(tmp_path: Path) -> None:
    async def _run():
        supervisor = ProcessSupervisor()
        handle = await supervisor.spawn("specstudio-missing-binary-xyz", [], tmp_path)
        events = [event async for event in handle.events]
        return handle, events

    handle, events = asyncio.run(_run())

    assert handle.spawn_failed is True
    assert [event.type for event in events] == ["error", "complete"]
    assert events[-1].exit_code == SPAWN_FAILED_EXIT_CODE
    assert "specstudio-missing-binary-xyz" in events[0].data


def test_output_over_limit_is_truncated_and_process_stopped(tmp_path: Path) -> None:
    script = (
        "import sys, time\n"
        "for _ in range(200):\n"
        "    sys.stdout.write('x' * 1024); sys.stdout.flush()\n"
        "time.sleep(30)\n"
    )

    async def _run():
        supervisor = ProcessSupervisor(max_output_bytes=4096)
        handle = await supervisor.spawn(sys.executable, ["-c", script], tmp_path)
        events = await asyncio.wait_for(_collect(handle), timeout=20)
        return handle, events

    async def _collect(handle):
        return [event async for event in handle.events]

    handle, events = asyncio.run(_run())

    assert handle.truncated is True
    output_bytes = sum(len(event.data) for event in events if event.type == "output")
    assert output_bytes == 4096
    assert any("exceeded 4096 bytes" in event.data for event in events if event.type == "error")
    assert events[-1].type == "complete"
    assert events[-1].exit_code != 0


def test_chunk_crossing_limit_keeps_bytes_within_budget(tmp_path: Path) -> None:
    script = "import sys, time; sys.stdout.write('x' * 200); sys.stdout.flush(); time.sleep(30)"

    async def _run():
        supervisor = ProcessSupervisor(max_output_bytes=150)
        handle = await supervisor.spawn(sys.executable, ["-c", script], tmp_path)
        events = await asyncio.wait_for(_collect(handle), timeout=20)
        return handle, events

    async def _collect(handle):
        return [event async for event in handle.events]

    handle, events = asyncio.run(_run())

    output = "".join(event.data for event in events if event.type == "output")
    assert output == "x" * 150
    assert handle.truncated is True
    assert events[-1].type == "complete"


def test_cancel_terminates_running_process_and_is_idempotent(tmp_path: Path) -> None:
    async def _run():
        supervisor = ProcessSupervisor()
        handle = await supervisor.spawn(
            sys.executable, ["-c", "import time; time.sleep(30)"], tmp_path
        )
        supervisor.cancel(handle)
        supervisor.cancel(handle)
        exit_code = await asyncio.wait_for(handle.wait(), timeout=10)
        supervisor.cancel(handle)
        return handle, exit_code

    handle, exit_code = asyncio.run(_run())

    assert handle.cancel_requested is True
    assert handle.running is False
    assert exit_code != 0


def test_multibyte_output_is_decoded_across_chunks(tmp_path: Path) -> None:
    script = "import sys; sys.stdout.buffer.write(('é' * 5000).encode('utf-8'))"
    events = asyncio.run(_drain(ProcessSupervisor(), ["-c", script], tmp_path))

    output = "".join(event.data for event in events if event.type == "output")
    assert output == "é" * 5000
