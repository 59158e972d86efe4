from __future__ import annotations

from pathlib import Path

from specstudio.models import Phase, Ticket
from specstudio.process import ProcessHandle
from specstudio.specialists.base import SpecialistAgent, render_ticket


class CoderAgent(SpecialistAgent):
    role = "coder"
    instructions = """
You are implementing a single ticket from a development plan.
Work directly in the current directory.
""".strip()

    def build_prompt(self, phase: Phase, ticket: Ticket) -> str:
        phase_section = f"## Phase: {phase.title}"
        if phase.description.strip():
            phase_section += f"\n{phase.description.strip()}"
        body = f"""{phase_section}

{render_ticket(ticket)}

## Instructions
1. Implement only what this ticket requires
2. Follow the conventions already present in the project
3. Create necessary files and directories
4. Make sure every acceptance criterion above is met
5. Do NOT commit any changes - git operations are handled manually by the user"""
        return self.render_prompt(body)

    async def start(self, phase: Phase, ticket: Ticket, working_directory: Path) -> ProcessHandle:
        return await self.backend.start(self.build_prompt(phase, ticket), working_directory)

    def cancel(self, handle: ProcessHandle) -> None:
        self.backend.cancel(handle)
