import asyncio
from pathlib import Path

import pytest

from specstudio.backends.base import AgentBackend
from specstudio.errors import PlanFormatError, ReviewUnparseableError
from specstudio.models import Phase, Ticket
from specstudio.process import ProcessHandle
from specstudio.specialists import CoderAgent, PlannerAgent, QualityGateReviewer, parse_verdict


class ScriptedBackend(AgentBackend):
    def __init__(self, reply: str = "") -> None:
        self.reply = reply
        self.prompts: list[str] = []
        self.working_directories: list[Path] = []

    async def start(self, prompt: str, working_directory: Path) -> ProcessHandle:
        raise AssertionError("streaming is not used by one-shot specialists")

    def cancel(self, handle: ProcessHandle) -> None:
        _ = handle

    async def complete(self, prompt: str, working_directory: Path) -> str:
        self.prompts.append(prompt)
        self.working_directories.append(working_directory)
        return self.reply


def _ticket() -> Ticket:
    return Ticket(
        id="FEAT-001",
        title="Add login form",
        requirements=["Render email and password fields"],
        acceptance_criteria=["Submitting empty fields shows an error"],
    )


def test_parse_verdict_accepts_json_in_prose() -> None:
    verdict = parse_verdict('Sure.\n{"approved": false, "critique": "No validation"}\n')

    assert verdict.approved is False
    assert verdict.critique == "No validation"


def test_parse_verdict_coerces_string_booleans_and_blank_critique() -> None:
    verdict = parse_verdict('{"approved": "TRUE", "critique": "  "}')

    assert verdict.approved is True
    assert verdict.critique is None


def test_parse_verdict_rejects_missing_or_invalid_approved() -> None:
    with pytest.raises(ReviewUnparseableError):
        parse_verdict("I think it is fine.")
    with pytest.raises(ReviewUnparseableError) as excinfo:
        parse_verdict('{"approved": "maybe"}')

    assert excinfo.value.raw_output == '{"approved": "maybe"}'


def test_reviewer_prompt_contains_ticket_and_clipped_diff() -> None:
    reviewer = QualityGateReviewer(ScriptedBackend(), max_diff_chars=10)
    prompt = reviewer.build_prompt(_ticket(), "+" * 50)

    assert "FEAT-001" in prompt
    assert "Submitting empty fields shows an error" in prompt
    assert "+" * 10 in prompt
    assert "+" * 11 not in prompt
    assert "40 characters omitted" in prompt
    assert '"approved"' in prompt


def test_reviewer_review_returns_verdict(tmp_path: Path) -> None:
    backend = ScriptedBackend('{"approved": true, "critique": "All criteria met"}')
    reviewer = QualityGateReviewer(backend)

    verdict = asyncio.run(reviewer.review(_ticket(), "diff --git a/x b/x\n", tmp_path))

    assert verdict.approved is True
    assert verdict.critique == "All criteria met"
    assert backend.working_directories == [tmp_path]


def test_coder_prompt_includes_phase_ticket_and_no_commit_rule() -> None:
    coder = CoderAgent(ScriptedBackend())
    phase = Phase(title="Auth", description="User authentication", tickets=[_ticket()])

    prompt = coder.build_prompt(phase, _ticket())

    assert "## Phase: Auth" in prompt
    assert "User authentication" in prompt
    assert "Render email and password fields" in prompt
    assert "Do NOT commit any changes" in prompt


def test_planner_generates_plan_with_all_tickets_todo(tmp_path: Path) -> None:
    reply = """Plan below.
{"title": "Shop", "overview": "MVP", "phases": [
  {"title": "Setup", "description": "", "tickets": [
    {"id": "T-1", "title": "Scaffold", "requirements": ["init"],
     "acceptanceCriteria": ["builds"], "status": "done"}
  ]}
]}"""
    backend = ScriptedBackend(reply)
    planner = PlannerAgent(backend)

    plan = asyncio.run(planner.generate("Build a shop", tmp_path))

    assert plan.title == "Shop"
    ticket = plan.phases[0].tickets[0]
    assert ticket.acceptance_criteria == ["builds"]
    assert ticket.status == "todo"
    assert "Build a shop" in backend.prompts[0]
    assert backend.prompts[0].count("You are the Planner/Architect specialist.") == 1


def test_planner_rejects_reply_without_plan(tmp_path: Path) -> None:
    planner = PlannerAgent(ScriptedBackend("I could not plan this."))

    with pytest.raises(PlanFormatError):
        asyncio.run(planner.generate("Build a shop", tmp_path))
