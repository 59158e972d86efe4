from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specstudio.backends.base import AgentBackend
from specstudio.models import Ticket


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


def bullet_list(items: list[str], empty: str = "- (none specified)") -> str:
    lines = [f"- {item.strip()}" for item in items if item.strip()]
    return "\n".join(lines) if lines else empty


def render_ticket(ticket: Ticket) -> str:
    return (
        f"## Ticket {ticket.id}: {ticket.title}\n\n"
        f"### Requirements\n{bullet_list(ticket.requirements)}\n\n"
        f"### Acceptance Criteria\n{bullet_list(ticket.acceptance_criteria)}"
    )


class SpecialistAgent:
    role: str = "specialist"
    instructions: str = "You are a software specialist."

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend

    def render_prompt(self, body: str) -> str:
        return f"{self.instructions.strip()}\n\n{body.strip()}\n"

    async def run(self, body: str, working_directory: Path) -> SpecialistResponse:
        prompt = self.render_prompt(body)
        content = await self.backend.complete(prompt, working_directory)
        return SpecialistResponse(
            role=self.role,
            content=content.strip(),
            metadata={"backend": getattr(self.backend, "name", "agent")},
        )
