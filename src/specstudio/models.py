from __future__ import annotations

import re
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

from specstudio.errors import PlanFormatError

TicketStatus = Literal["todo", "running", "done"]
StreamEventType = Literal["output", "error", "complete"]

TICKET_STATUSES: tuple[str, ...] = ("todo", "running", "done")
EXIT_CODE_PATTERN = re.compile(r"(-?\d+)\s*$")


def now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, slots=True)
class StreamEvent:
    type: StreamEventType
    data: str
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def output(cls, data: str) -> StreamEvent:
        return cls("output", data)

    @classmethod
    def error(cls, data: str) -> StreamEvent:
        return cls("error", data)

    @classmethod
    def complete(cls, exit_code: int) -> StreamEvent:
        return cls("complete", f"Process exited with code {exit_code}")

    @property
    def exit_code(self) -> int | None:
        if self.type != "complete":
            return None
        match = EXIT_CODE_PATTERN.search(self.data)
        return int(match.group(1)) if match else None


@dataclass(frozen=True, slots=True)
class QualityGateVerdict:
    approved: bool
    critique: str | None = None


@dataclass(slots=True)
class Ticket:
    id: str
    title: str
    requirements: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    status: TicketStatus = "todo"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Ticket:
        if not isinstance(data, dict):
            raise PlanFormatError(f"Ticket entry must be an object, got {type(data).__name__}")
        ticket_id = str(data.get("id", "")).strip()
        if not ticket_id:
            raise PlanFormatError("Ticket entry is missing an id.")
        status = str(data.get("status") or "todo").lower()
        # A persisted "running" ticket has no live process behind it anymore.
        if status not in ("todo", "done"):
            status = "todo"
        return cls(
            id=ticket_id,
            title=str(data.get("title", "")),
            requirements=_string_list(data.get("requirements")),
            acceptance_criteria=_string_list(
                data.get("acceptance_criteria", data.get("acceptanceCriteria"))
            ),
            status=status,  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "requirements": list(self.requirements),
            "acceptance_criteria": list(self.acceptance_criteria),
            "status": self.status,
        }


@dataclass(slots=True)
class Phase:
    title: str
    description: str = ""
    tickets: list[Ticket] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        if not isinstance(data, dict):
            raise PlanFormatError(f"Phase entry must be an object, got {type(data).__name__}")
        raw_tickets = data.get("tickets") or []
        if not isinstance(raw_tickets, list):
            raise PlanFormatError("Phase tickets must be a list.")
        return cls(
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            tickets=[Ticket.from_dict(item) for item in raw_tickets],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "tickets": [ticket.to_dict() for ticket in self.tickets],
        }


@dataclass(slots=True)
class DevelopmentPlan:
    title: str
    overview: str = ""
    phases: list[Phase] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DevelopmentPlan:
        if not isinstance(data, dict):
            raise PlanFormatError("Plan document must be a JSON object.")
        raw_phases = data.get("phases")
        if not isinstance(raw_phases, list):
            raise PlanFormatError("Plan document must contain a 'phases' list.")
        plan = cls(
            title=str(data.get("title", "")),
            overview=str(data.get("overview", "")),
            phases=[Phase.from_dict(item) for item in raw_phases],
        )
        seen: set[str] = set()
        for _, ticket in plan.iter_tickets():
            if ticket.id in seen:
                raise PlanFormatError(f"Duplicate ticket id in plan: {ticket.id}")
            seen.add(ticket.id)
        return plan

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "overview": self.overview,
            "phases": [phase.to_dict() for phase in self.phases],
        }

    def iter_tickets(self) -> Iterator[tuple[Phase, Ticket]]:
        for phase in self.phases:
            for ticket in phase.tickets:
                yield phase, ticket

    def find_ticket(self, ticket_id: str) -> tuple[Phase, Ticket] | None:
        for phase, ticket in self.iter_tickets():
            if ticket.id == ticket_id:
                return phase, ticket
        return None

    def status_counts(self) -> dict[str, int]:
        counts = {status: 0 for status in TICKET_STATUSES}
        for _, ticket in self.iter_tickets():
            counts[ticket.status] = counts.get(ticket.status, 0) + 1
        return counts


@dataclass(slots=True)
class ExecutionOutcome:
    ticket_id: str
    epoch: int
    status: TicketStatus
    reason: str
    critique: str | None = None
    files_changed: int | None = None
    exit_code: int | None = None


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        raise PlanFormatError(f"Expected a list of strings, got {type(value).__name__}")
    return [str(item) for item in value]
