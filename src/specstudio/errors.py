from __future__ import annotations


class SpecStudioError(RuntimeError):
    """Base class for pipeline errors surfaced to callers."""


class ConfigError(SpecStudioError):
    """Raised when the workspace configuration cannot be used."""


class PlanFormatError(SpecStudioError):
    """Raised when a plan document does not match the expected schema."""


class TicketNotFound(SpecStudioError):
    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Ticket not found: {ticket_id}")
        self.ticket_id = ticket_id


class TicketStateError(SpecStudioError):
    """Raised when a ticket is not in a state that allows the operation."""


class ConcurrentExecutionRejected(SpecStudioError):
    def __init__(self, running_ticket_id: str) -> None:
        super().__init__(f"Ticket {running_ticket_id} is already running.")
        self.running_ticket_id = running_ticket_id


class SpawnFailure(SpecStudioError):
    """The agent process could not be started."""


class StreamTruncated(SpecStudioError):
    """Agent output exceeded the configured buffer limit."""

    def __init__(self, limit_bytes: int) -> None:
        super().__init__(
            f"Process output exceeded {limit_bytes} bytes; output truncated and process stopped."
        )
        self.limit_bytes = limit_bytes


class NotARepositoryError(SpecStudioError):
    """The workspace is not under git version control."""


class DiffUnavailableError(SpecStudioError):
    """The diff could not be computed for a reason other than a missing repository."""


class ReviewUnparseableError(SpecStudioError):
    """The reviewer reply did not contain a usable verdict object."""

    def __init__(self, message: str, *, raw_output: str = "") -> None:
        super().__init__(message)
        self.raw_output = raw_output


class ReviewRejected(SpecStudioError):
    """The quality gate rejected a ticket's changes."""

    def __init__(self, ticket_id: str, critique: str | None) -> None:
        super().__init__(critique or f"Quality gate rejected {ticket_id}.")
        self.ticket_id = ticket_id
        self.critique = critique
