import json
import re
import subprocess
from pathlib import Path

from click.testing import CliRunner

from specstudio.backends.base import AgentBackend
from specstudio.channel import StreamChannel
from specstudio.cli import cli
from specstudio.models import StreamEvent
from specstudio.process import ProcessHandle

PLAN_REPLY = """Here is the plan:
{"title": "Todo app", "overview": "Small MVP", "phases": [
  {"title": "Core", "description": "Basics", "tickets": [
    {"id": "FEAT-001", "title": "Model", "requirements": ["Todo dataclass"],
     "acceptance_criteria": ["Todo has a title"]}
  ]},
  {"title": "API", "description": "", "tickets": [
    {"id": "FEAT-002", "title": "Endpoints", "requirements": ["CRUD"],
     "acceptance_criteria": ["List returns todos"]}
  ]}
]}"""


class FileWritingCoder(AgentBackend):
    """Pretends to be a coding agent by writing one file named after the ticket."""

    async def start(self, prompt: str, working_directory: Path) -> ProcessHandle:
        match = re.search(r"## Ticket (\S+):", prompt)
        assert match is not None
        name = f"{match.group(1).lower().replace('-', '_')}.py"
        (working_directory / name).write_text("x = 1\n", encoding="utf-8")
        channel = StreamChannel()
        channel.publish(StreamEvent.output(f"wrote {name}\n"))
        channel.publish(StreamEvent.complete(0))
        return ProcessHandle(["fake-coder"], channel)

    def cancel(self, handle: ProcessHandle) -> None:
        _ = handle

    async def complete(self, prompt: str, working_directory: Path) -> str:
        raise AssertionError("the coder only streams")


class IdleCoder(FileWritingCoder):
    async def start(self, prompt: str, working_directory: Path) -> ProcessHandle:
        channel = StreamChannel()
        channel.publish(StreamEvent.output("nothing to do\n"))
        channel.publish(StreamEvent.complete(0))
        return ProcessHandle(["fake-coder"], channel)


class ReplyBackend(AgentBackend):
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.calls = 0

    async def start(self, prompt: str, working_directory: Path) -> ProcessHandle:
        raise AssertionError("one-shot backend")

    def cancel(self, handle: ProcessHandle) -> None:
        _ = handle

    async def complete(self, prompt: str, working_directory: Path) -> str:
        self.calls += 1
        return self.reply


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _commit_all(repo_path: Path, message: str) -> None:
    _run(["git", "add", "-A"], cwd=repo_path)
    _run(["git", "commit", "-m", message], cwd=repo_path)


def _setup(tmp_path: Path, monkeypatch, review_reply: str) -> tuple[Path, Path, ReplyBackend]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    spec_file = tmp_path / "spec.md"
    spec_file.write_text("# Todo app\nUsers manage todos.\n", encoding="utf-8")

    reviewer = ReplyBackend(review_reply)
    monkeypatch.chdir(repo)
    monkeypatch.setattr(
        "specstudio.cli._build_coder_backend", lambda config, sup: FileWritingCoder()
    )
    monkeypatch.setattr("specstudio.cli._build_reviewer_backend", lambda config, sup: reviewer)
    monkeypatch.setattr(
        "specstudio.cli._build_planner_backend", lambda config, sup: ReplyBackend(PLAN_REPLY)
    )
    return repo, spec_file, reviewer


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    repo, spec_file, reviewer = _setup(
        tmp_path, monkeypatch, '{"approved": true, "critique": "Looks good"}'
    )
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output
    assert (repo / "specstudio.toml").exists()
    _commit_all(repo, "add config")

    plan_result = runner.invoke(cli, ["plan", str(spec_file)])
    assert plan_result.exit_code == 0, plan_result.output
    assert "Tickets: 2" in plan_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert "[ ] FEAT-001 Model" in status_result.output

    run_result = runner.invoke(cli, ["run", "FEAT-001"])
    assert run_result.exit_code == 0, run_result.output
    assert "wrote feat_001.py" in run_result.output
    assert "Looks good" in run_result.output
    assert "FEAT-001: done (approved)" in run_result.output
    _commit_all(repo, "FEAT-001")

    json_result = runner.invoke(cli, ["status", "--json"])
    payload = json.loads(json_result.output)
    assert payload["phases"][0]["tickets"][0]["status"] == "done"
    assert payload["phases"][1]["tickets"][0]["status"] == "todo"

    next_result = runner.invoke(cli, ["next"])
    assert next_result.exit_code == 0, next_result.output
    assert "FEAT-002: done (approved)" in next_result.output
    _commit_all(repo, "FEAT-002")

    finished_result = runner.invoke(cli, ["next"])
    assert finished_result.exit_code == 0
    assert "All tickets completed." in finished_result.output

    rerun_result = runner.invoke(cli, ["run", "FEAT-001"])
    assert rerun_result.exit_code != 0
    assert "reopen" in rerun_result.output

    reopen_result = runner.invoke(cli, ["reopen", "FEAT-001"])
    assert reopen_result.exit_code == 0
    assert "FEAT-001: todo" in reopen_result.output

    assert reviewer.calls == 2


def test_run_rejected_ticket_exits_nonzero(tmp_path: Path, monkeypatch) -> None:
    repo, spec_file, _ = _setup(
        tmp_path, monkeypatch, '{"approved": false, "critique": "Missing validation"}'
    )
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _commit_all(repo, "add config")
    assert runner.invoke(cli, ["plan", str(spec_file)]).exit_code == 0

    run_result = runner.invoke(cli, ["run", "FEAT-001"])

    assert run_result.exit_code == 1
    assert "Missing validation" in run_result.output
    assert "FEAT-001: todo (rejected)" in run_result.output

    verify_result = runner.invoke(cli, ["verify", "FEAT-001"])
    assert verify_result.exit_code == 1
    assert "Missing validation" in verify_result.output


def test_run_without_changes_marks_done_without_review(tmp_path: Path, monkeypatch) -> None:
    repo, spec_file, reviewer = _setup(tmp_path, monkeypatch, "unused")
    monkeypatch.setattr(
        "specstudio.cli._build_coder_backend", lambda config, sup: IdleCoder()
    )
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _commit_all(repo, "add config")
    assert runner.invoke(cli, ["plan", str(spec_file)]).exit_code == 0

    run_result = runner.invoke(cli, ["run", "FEAT-001"])

    assert run_result.exit_code == 0, run_result.output
    assert "FEAT-001: done (no_changes)" in run_result.output
    assert reviewer.calls == 0


def test_errors_are_reported_as_click_errors(tmp_path: Path, monkeypatch) -> None:
    _, spec_file, _ = _setup(tmp_path, monkeypatch, "unused")
    runner = CliRunner()

    missing_plan = runner.invoke(cli, ["status"])
    assert missing_plan.exit_code != 0
    assert "No plan found" in missing_plan.output

    assert runner.invoke(cli, ["plan", str(spec_file)]).exit_code == 0
    duplicate_plan = runner.invoke(cli, ["plan", str(spec_file)])
    assert duplicate_plan.exit_code != 0
    assert "--force" in duplicate_plan.output

    unknown = runner.invoke(cli, ["run", "NOPE-9"])
    assert unknown.exit_code != 0
    assert "Ticket not found: NOPE-9" in unknown.output


def test_invalid_config_is_rejected(tmp_path: Path, monkeypatch) -> None:
    repo, _, _ = _setup(tmp_path, monkeypatch, "unused")
    (repo / "specstudio.toml").write_text(
        '[quality_gate]\nfailure_policy = "maybe"\n', encoding="utf-8"
    )

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "failure_policy" in result.output
