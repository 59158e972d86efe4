"""Ticket execution state machine.

A ticket moves ``todo -> running`` through :meth:`TicketOrchestrator.execute`
and leaves ``running`` exactly once, either to ``done`` or back to ``todo``.
Every execution attempt gets a new per-ticket epoch. Results produced under an
older epoch (after a cancel, or after the ticket was started again) are
dropped without touching the ticket or emitting anything.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeVar

from specstudio.errors import (
    ConcurrentExecutionRejected,
    NotARepositoryError,
    ReviewRejected,
    ReviewUnparseableError,
    TicketNotFound,
    TicketStateError,
)
from specstudio.models import (
    DevelopmentPlan,
    ExecutionOutcome,
    Phase,
    QualityGateVerdict,
    Ticket,
    TicketStatus,
    now_ms,
)
from specstudio.process import ProcessHandle
from specstudio.specialists.coder import CoderAgent
from specstudio.specialists.reviewer import QualityGateReviewer
from specstudio.state.diff import DiffProvider, DiffResult
from specstudio.state.plan_store import PlanStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ObserverHook = Callable[[dict[str, Any]], None]
NoticeLevel = Literal["info", "warning", "error"]

DEFAULT_APPROVAL_MESSAGE = "Quality gate passed."


@dataclass(slots=True)
class _Execution:
    ticket_id: str
    epoch: int
    kind: Literal["execute", "verify"] = "execute"
    handle: ProcessHandle | None = None
    pending: asyncio.Future[Any] | None = None


class TicketOrchestrator:
    def __init__(
        self,
        plan: DevelopmentPlan,
        *,
        coder: CoderAgent,
        reviewer: QualityGateReviewer,
        diff_provider: DiffProvider,
        working_directory: Path,
        failure_policy: str = "fail_open",
        plan_store: PlanStore | None = None,
        event_hook: ObserverHook | None = None,
    ) -> None:
        self.plan = plan
        self.coder = coder
        self.reviewer = reviewer
        self.diff_provider = diff_provider
        self.working_directory = working_directory.resolve()
        self.failure_policy = failure_policy
        self.plan_store = plan_store
        self._observers: list[ObserverHook] = []
        self._epochs: dict[str, int] = {}
        self._active: _Execution | None = None
        if event_hook is not None:
            self._observers.append(event_hook)
        # Nothing is running yet, so no ticket may claim to be.
        for _, ticket in self.plan.iter_tickets():
            if ticket.status == "running":
                ticket.status = "todo"

    @property
    def running_ticket_id(self) -> str | None:
        if self._active is None or self._active.kind != "execute":
            return None
        return self._active.ticket_id

    @property
    def busy(self) -> bool:
        return self._active is not None

    def epoch(self, ticket_id: str) -> int:
        return self._epochs.get(ticket_id, 0)

    def subscribe(self, hook: ObserverHook) -> Callable[[], None]:
        self._observers.append(hook)

        def _unsubscribe() -> None:
            if hook in self._observers:
                self._observers.remove(hook)

        return _unsubscribe

    def _emit(self, event: dict[str, Any]) -> None:
        for hook in list(self._observers):
            try:
                hook(event)
            except Exception:
                logger.exception("Observer failed while handling %s event", event.get("event"))

    def _notice(
        self,
        level: NoticeLevel,
        message: str,
        execution: _Execution | None = None,
    ) -> None:
        log = {"info": logger.info, "warning": logger.warning, "error": logger.error}[level]
        log("%s", message)
        self._emit(
            {
                "event": "notice",
                "level": level,
                "message": message,
                "ticket_id": execution.ticket_id if execution else None,
                "epoch": execution.epoch if execution else None,
                "timestamp": now_ms(),
            }
        )

    def _set_status(self, ticket: Ticket, status: TicketStatus) -> None:
        if ticket.status == status:
            return
        ticket.status = status
        self._emit(
            {
                "event": "status",
                "ticket_id": ticket.id,
                "epoch": self.epoch(ticket.id),
                "status": status,
            }
        )
        self._persist()

    def _persist(self) -> None:
        if self.plan_store is None:
            return
        try:
            self.plan_store.save(self.plan)
        except OSError as exc:
            self._notice("error", f"Failed to save plan to {self.plan_store.path}: {exc}")

    def _is_current(self, execution: _Execution) -> bool:
        return self._epochs.get(execution.ticket_id, 0) == execution.epoch

    def _lookup(self, ticket_id: str) -> tuple[Phase, Ticket]:
        found = self.plan.find_ticket(ticket_id)
        if found is None:
            raise TicketNotFound(ticket_id)
        return found

    def _claim(
        self, ticket_id: str, kind: Literal["execute", "verify"]
    ) -> tuple[_Execution, Phase, Ticket]:
        # Runs without awaiting, so check-and-occupy cannot interleave with another call.
        if self._active is not None:
            raise ConcurrentExecutionRejected(self._active.ticket_id)
        phase, ticket = self._lookup(ticket_id)
        if kind == "execute":
            if ticket.status == "done":
                raise TicketStateError(
                    f"Ticket {ticket_id} is already done; reopen it before running it again."
                )
            self._epochs[ticket_id] = self.epoch(ticket_id) + 1
        execution = _Execution(ticket_id=ticket_id, epoch=self.epoch(ticket_id), kind=kind)
        self._active = execution
        if kind == "execute":
            self._set_status(ticket, "running")
        return execution, phase, ticket

    def _release(self, execution: _Execution) -> None:
        if self._active is execution:
            self._active = None

    async def _step(self, execution: _Execution, awaitable: Awaitable[T]) -> T:
        """Await one pipeline step as a task that ``cancel()`` can interrupt."""
        task = asyncio.ensure_future(awaitable)
        execution.pending = task
        try:
            return await task
        finally:
            execution.pending = None

    def _interrupted(self, execution: _Execution) -> bool:
        # A step cancelled by cancel(), as opposed to the caller's task being cancelled.
        current = asyncio.current_task()
        caller_cancelled = current is not None and current.cancelling() > 0
        return not caller_cancelled and not self._is_current(execution)

    def _failure_status(self) -> TicketStatus:
        return "done" if self.failure_policy == "fail_open" else "todo"

    def _failure_suffix(self) -> str:
        if self.failure_policy == "fail_open":
            return "Marked as done; manual review required."
        return "Returned to todo; manual review required."

    def _finish(
        self,
        execution: _Execution,
        ticket: Ticket,
        status: TicketStatus,
        reason: str,
        level: NoticeLevel,
        message: str,
        **details: Any,
    ) -> ExecutionOutcome:
        self._set_status(ticket, status)
        self._notice(level, message, execution)
        return ExecutionOutcome(
            ticket_id=ticket.id,
            epoch=execution.epoch,
            status=status,
            reason=reason,
            **details,
        )

    @staticmethod
    def _stale(execution: _Execution, ticket: Ticket) -> ExecutionOutcome:
        logger.debug("Dropping result of %s epoch %d", execution.ticket_id, execution.epoch)
        return ExecutionOutcome(
            ticket_id=ticket.id,
            epoch=execution.epoch,
            status=ticket.status,
            reason="cancelled",
        )

    async def execute(self, ticket_id: str) -> ExecutionOutcome:
        execution, phase, ticket = self._claim(ticket_id, "execute")
        try:
            return await self._run(execution, phase, ticket)
        except asyncio.CancelledError:
            if self._interrupted(execution):
                return self._stale(execution, ticket)
            if self._active is execution:
                self.cancel()
            raise
        except Exception as exc:
            if self._is_current(execution):
                logger.exception("Execution of %s failed", ticket.id)
                self._set_status(ticket, "todo")
                self._notice("error", f"Execution of {ticket.id} failed: {exc}", execution)
            raise
        finally:
            self._release(execution)

    async def _run(self, execution: _Execution, phase: Phase, ticket: Ticket) -> ExecutionOutcome:
        self._notice("info", f"Starting {ticket.id}: {ticket.title}", execution)
        handle = await self.coder.start(phase, ticket, self.working_directory)
        if not self._is_current(execution):
            self.coder.cancel(handle)
            handle.events.close()
            return self._stale(execution, ticket)
        execution.handle = handle

        exit_code: int | None = None
        async for event in handle.events:
            if not self._is_current(execution):
                break
            self._emit(
                {
                    "event": "stream",
                    "ticket_id": ticket.id,
                    "epoch": execution.epoch,
                    "type": event.type,
                    "data": event.data,
                    "timestamp": event.timestamp,
                }
            )
            if event.type == "complete":
                exit_code = event.exit_code
        if not self._is_current(execution):
            return self._stale(execution, ticket)

        if handle.spawn_failed:
            return self._finish(
                execution,
                ticket,
                "todo",
                "spawn_failed",
                "error",
                f"Agent for {ticket.id} could not be started: {handle.failure}",
                exit_code=exit_code,
            )
        if exit_code not in (0, None):
            self._notice("warning", f"Agent exited with code {exit_code}.", execution)

        try:
            diff = await self._step(
                execution,
                asyncio.to_thread(self.diff_provider.get_diff, self.working_directory),
            )
        except NotARepositoryError:
            if not self._is_current(execution):
                return self._stale(execution, ticket)
            return self._finish(
                execution,
                ticket,
                "done",
                "not_a_repository",
                "warning",
                "Workspace is not a git repository; quality gate skipped. "
                f"Marked {ticket.id} as done.",
                exit_code=exit_code,
            )
        except Exception as exc:
            if not self._is_current(execution):
                return self._stale(execution, ticket)
            return self._finish(
                execution,
                ticket,
                self._failure_status(),
                "diff_unavailable",
                "error",
                f"Could not compute diff for {ticket.id}: {exc}. {self._failure_suffix()}",
                exit_code=exit_code,
            )
        if not self._is_current(execution):
            return self._stale(execution, ticket)

        if diff.files_changed == 0:
            return self._finish(
                execution,
                ticket,
                "done",
                "no_changes",
                "info",
                f"No changes detected for {ticket.id}. Marked as done.",
                files_changed=0,
                exit_code=exit_code,
            )
        return await self._apply_review(execution, ticket, diff, exit_code)

    async def _apply_review(
        self,
        execution: _Execution,
        ticket: Ticket,
        diff: DiffResult,
        exit_code: int | None,
    ) -> ExecutionOutcome:
        self._notice(
            "info",
            f"Running quality gate for {ticket.id} ({diff.files_changed} file(s) changed).",
            execution,
        )
        details = {"files_changed": diff.files_changed, "exit_code": exit_code}
        try:
            verdict = await self._step(
                execution, self.reviewer.review(ticket, diff.diff, self.working_directory)
            )
        except ReviewUnparseableError:
            if not self._is_current(execution):
                return self._stale(execution, ticket)
            return self._finish(
                execution,
                ticket,
                self._failure_status(),
                "review_unparseable",
                "warning",
                f"Quality gate result for {ticket.id} could not be parsed. "
                f"{self._failure_suffix()}",
                **details,
            )
        except Exception as exc:
            if not self._is_current(execution):
                return self._stale(execution, ticket)
            return self._finish(
                execution,
                ticket,
                self._failure_status(),
                "review_failed",
                "warning",
                f"Quality gate for {ticket.id} failed: {exc}. {self._failure_suffix()}",
                **details,
            )
        if not self._is_current(execution):
            return self._stale(execution, ticket)

        if verdict.approved:
            return self._finish(
                execution,
                ticket,
                "done",
                "approved",
                "info",
                verdict.critique or DEFAULT_APPROVAL_MESSAGE,
                critique=verdict.critique,
                **details,
            )
        return self._finish(
            execution,
            ticket,
            "todo",
            "rejected",
            "error",
            str(ReviewRejected(ticket.id, verdict.critique)),
            critique=verdict.critique,
            **details,
        )

    def cancel(self) -> bool:
        execution = self._active
        if execution is None:
            return False
        self._active = None
        self._epochs[execution.ticket_id] = self.epoch(execution.ticket_id) + 1
        if execution.pending is not None:
            execution.pending.cancel()
        if execution.handle is not None:
            self.coder.cancel(execution.handle)
            execution.handle.events.close()
        found = self.plan.find_ticket(execution.ticket_id)
        if found is not None and found[1].status == "running":
            self._set_status(found[1], "todo")
        self._notice("warning", "Operation cancelled.", execution)
        return True

    async def execute_next(self) -> ExecutionOutcome | None:
        if self._active is not None:
            raise ConcurrentExecutionRejected(self._active.ticket_id)
        for _, ticket in self.plan.iter_tickets():
            if ticket.status not in ("done", "running"):
                return await self.execute(ticket.id)
        self._notice("info", "All tickets completed.")
        return None

    async def verify(self, ticket_id: str) -> QualityGateVerdict | None:
        """Run the quality gate on the current workspace diff without changing status."""
        execution, _, ticket = self._claim(ticket_id, "verify")
        try:
            try:
                diff = await self._step(
                    execution,
                    asyncio.to_thread(self.diff_provider.get_diff, self.working_directory),
                )
            except NotARepositoryError:
                if self._is_current(execution):
                    self._notice(
                        "warning",
                        "Workspace is not a git repository; nothing to verify.",
                        execution,
                    )
                return None
            if not self._is_current(execution):
                return None
            if diff.files_changed == 0:
                self._notice("info", f"No changes to verify for {ticket.id}.", execution)
                return None
            try:
                verdict = await self._step(
                    execution, self.reviewer.review(ticket, diff.diff, self.working_directory)
                )
            except ReviewUnparseableError:
                if self._is_current(execution):
                    self._notice(
                        "warning",
                        f"Quality gate result for {ticket.id} could not be parsed; "
                        "manual review required.",
                        execution,
                    )
                return None
            except Exception as exc:
                if self._is_current(execution):
                    self._notice(
                        "warning",
                        f"Quality gate for {ticket.id} failed: {exc}; manual review required.",
                        execution,
                    )
                return None
            if not self._is_current(execution):
                return None
            if verdict.approved:
                self._notice("info", verdict.critique or DEFAULT_APPROVAL_MESSAGE, execution)
            else:
                self._notice("error", str(ReviewRejected(ticket.id, verdict.critique)), execution)
            return verdict
        except asyncio.CancelledError:
            if self._interrupted(execution):
                return None
            raise
        finally:
            self._release(execution)

    def reopen(self, ticket_id: str) -> Ticket:
        _, ticket = self._lookup(ticket_id)
        if ticket.status == "running":
            raise TicketStateError(f"Ticket {ticket_id} is running; cancel it first.")
        if ticket.status == "done":
            self._set_status(ticket, "todo")
            self._notice("info", f"Reopened {ticket.id}.")
        return ticket
