from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from specstudio.backends.base import AgentBackend
from specstudio.errors import ReviewUnparseableError
from specstudio.json_extract import extract_json_object
from specstudio.models import QualityGateVerdict, Ticket
from specstudio.specialists.base import SpecialistAgent, render_ticket

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIFF_CHARS = 200_000
VERDICT_KEY = "approved"


def parse_verdict(reply: str) -> QualityGateVerdict:
    payload = extract_json_object(reply, VERDICT_KEY)
    if payload is None:
        raise ReviewUnparseableError(
            "Reviewer reply did not contain a JSON verdict object.", raw_output=reply
        )
    approved = _coerce_approved(payload.get(VERDICT_KEY))
    if approved is None:
        raise ReviewUnparseableError(
            f"Reviewer verdict has a non-boolean 'approved' value: {payload.get(VERDICT_KEY)!r}",
            raw_output=reply,
        )
    critique = payload.get("critique")
    if critique is not None and not isinstance(critique, str):
        critique = str(critique)
    if isinstance(critique, str) and not critique.strip():
        critique = None
    return QualityGateVerdict(approved=approved, critique=critique)


def _coerce_approved(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
    return None


class QualityGateReviewer(SpecialistAgent):
    role = "reviewer"
    instructions = """
You are the quality gate for a development plan.
Review the diff below strictly against the ticket's requirements and
acceptance criteria. Do not modify any files.
""".strip()

    def __init__(
        self,
        backend: AgentBackend,
        *,
        max_diff_chars: int = DEFAULT_MAX_DIFF_CHARS,
    ) -> None:
        super().__init__(backend)
        self.max_diff_chars = max_diff_chars

    def _clip_diff(self, diff_text: str) -> str:
        if len(diff_text) <= self.max_diff_chars:
            return diff_text
        omitted = len(diff_text) - self.max_diff_chars
        clipped = diff_text[: self.max_diff_chars]
        return f"{clipped}\n... [diff truncated, {omitted} characters omitted]"

    def build_prompt(self, ticket: Ticket, diff_text: str) -> str:
        body = f"""{render_ticket(ticket)}

## Diff
```diff
{self._clip_diff(diff_text).rstrip()}
```

## Response format
Reply with a single JSON object:
{{"approved": true or false, "critique": "short explanation"}}
When rejecting, the critique must name each unmet acceptance criterion."""
        return self.render_prompt(body)

    async def review(
        self, ticket: Ticket, diff_text: str, working_directory: Path | None = None
    ) -> QualityGateVerdict:
        prompt = self.build_prompt(ticket, diff_text)
        reply = await self.backend.complete(prompt, working_directory or Path.cwd())
        verdict = parse_verdict(reply)
        logger.info(
            "Quality gate verdict for %s: %s",
            ticket.id,
            "approved" if verdict.approved else "rejected",
        )
        return verdict
