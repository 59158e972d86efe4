from __future__ import annotations

from pathlib import Path

from specstudio.errors import PlanFormatError
from specstudio.json_extract import extract_json_object
from specstudio.models import DevelopmentPlan
from specstudio.specialists.base import SpecialistAgent

PLAN_SCHEMA_HINT = """{
  "title": "string",
  "overview": "string",
  "phases": [
    {
      "title": "string",
      "description": "string",
      "tickets": [
        {
          "id": "FEAT-001",
          "title": "string",
          "requirements": ["string"],
          "acceptance_criteria": ["string"]
        }
      ]
    }
  ]
}"""


class PlannerAgent(SpecialistAgent):
    role = "planner"
    instructions = """
You are the Planner/Architect specialist.
Break the specification below into ordered phases of small, independently
implementable tickets with concrete acceptance criteria.
You produce plans, not code. Do not modify any files.
""".strip()

    def build_prompt(self, spec_text: str) -> str:
        return self.render_prompt(self._body(spec_text))

    @staticmethod
    def _body(spec_text: str) -> str:
        return f"""## Specification
{spec_text.strip()}

## Response format
Reply with a single JSON object matching this shape. Ticket ids must be unique.
{PLAN_SCHEMA_HINT}"""

    @staticmethod
    def parse_plan(reply: str) -> DevelopmentPlan:
        payload = extract_json_object(reply, "phases")
        if payload is None:
            raise PlanFormatError("Planner reply did not contain a plan JSON object.")
        plan = DevelopmentPlan.from_dict(payload)
        # Generated plans always start from a clean slate.
        for _, ticket in plan.iter_tickets():
            ticket.status = "todo"
        return plan

    async def generate(self, spec_text: str, working_directory: Path) -> DevelopmentPlan:
        response = await self.run(self._body(spec_text), working_directory)
        return self.parse_plan(response.content)
