"""Per-runner admission semaphore.

One long-lived workflow per mobile runner owns that runner's FIFO ticket
queue. Updates are applied one at a time in arrival order. A ticket that needs
several runners is granted on each runner's semaphore independently; the
followers report their grant to the leader runner's semaphore, and the leader
starts the pipeline once every required runner granted, then tells the
followers which run is holding their slot.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

import pydantic

from .. import constants
from ..activities.base import Activity, validate_payload
from ..activities.queued_pipeline import CheckWorkflowClosedActivity, StartQueuedPipelineActivity
from ..contracts import ActivityInput, WorkflowInput, WorkflowResult
from ..errors import InvalidRequestError, QueueLimitExceededError, StepflowError
from ..runtime.workflow import Workflow
from .types import (
    CANCEL_RUN_UPDATE,
    ENQUEUE_RUN_UPDATE,
    LIST_QUEUED_RUNS_QUERY,
    RUN_DONE_SIGNAL,
    RUN_DONE_UPDATE,
    RUN_GRANTED_SIGNAL,
    RUN_STARTED_SIGNAL,
    RUN_STATUS_QUERY,
    EnqueueRunRequest,
    EnqueueRunResponse,
    RunCancelRequest,
    RunDoneRequest,
    RunDoneSignal,
    RunGrantedSignal,
    RunStartedSignal,
    RunStatus,
    RunStatusView,
    RunTicketState,
    SemaphoreInput,
    SemaphoreState,
    semaphore_workflow_id,
)

if TYPE_CHECKING:
    from ..runtime.context import WorkflowContext

logger = logging.getLogger(__name__)


def _decode(model, arg: Any):
    try:
        return model.model_validate(arg or {})
    except pydantic.ValidationError as exc:
        raise InvalidRequestError(f"invalid {model.__name__}: {exc}") from None


class MobileRunnerSemaphoreWorkflow(Workflow):
    name = constants.SEMAPHORE_WORKFLOW_NAME

    def __init__(
        self,
        safety_net_interval: float = constants.SEMAPHORE_SAFETY_NET_INTERVAL,
        start_activity: Optional[Activity] = None,
        check_activity: Optional[Activity] = None,
    ) -> None:
        self.safety_net_interval = safety_net_interval
        self.start_activity = start_activity or StartQueuedPipelineActivity()
        self.check_activity = check_activity or CheckWorkflowClosedActivity()
        self.state: Optional[SemaphoreState] = None
        self._ctx: Optional["WorkflowContext"] = None
        self._lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._start_requested = asyncio.Event()
        self._has_running = asyncio.Event()
        self._signals: "asyncio.Queue[tuple[str, Any]]" = asyncio.Queue()

    @property
    def runner_id(self) -> str:
        return self.state.runner_id if self.state else ""

    async def run(self, ctx: "WorkflowContext", input: WorkflowInput) -> WorkflowResult:
        payload = validate_payload(SemaphoreInput, input.payload, self.name)
        self._ctx = ctx
        self.state = payload.state or await self._load_snapshot(payload.runner_id)
        if self.state is None:
            self.state = SemaphoreState(runner_id=payload.runner_id, capacity=payload.capacity)
        if self.state.capacity <= 0:
            self.state.capacity = constants.SEMAPHORE_DEFAULT_CAPACITY
        self.state.sort_queue()
        self._sync_events()
        self._ready.set()
        self._start_requested.set()
        logger.info(
            f"Semaphore for runner {self.runner_id} ready: capacity={self.state.capacity} "
            f"tickets={len(self.state.run_tickets)}"
        )

        await asyncio.gather(
            self._run_starter(ctx),
            self._process_signals(ctx),
            self._safety_net(ctx),
        )
        return WorkflowResult(message=f"semaphore for {self.runner_id} stopped")

    # ------------------------------------------------------------------
    # Persistence
    async def _load_snapshot(self, runner_id: str) -> Optional[SemaphoreState]:
        store = self._store()
        if store is None:
            return None
        snapshot = await store.load_state(runner_id)
        if not snapshot:
            return None
        logger.info(f"Resuming semaphore for runner {runner_id} from snapshot")
        return SemaphoreState.model_validate(snapshot)

    def _store(self):
        if self._ctx is None or self._ctx.clients is None:
            return None
        return self._ctx.clients.semaphore_store

    async def _commit(self) -> None:
        """Record a mutation: bump the counter, persist and wake the starter."""
        self.state.update_count += 1
        self._sync_events()
        self._start_requested.set()
        store = self._store()
        if store is not None:
            await store.save_state(self.runner_id, self.state.model_dump(mode="json"))

    def _sync_events(self) -> None:
        if any(t.status is RunStatus.RUNNING for t in self.state.run_tickets.values()):
            self._has_running.set()
        else:
            self._has_running.clear()

    # ------------------------------------------------------------------
    # Entry points
    async def handle_update(self, name: str, arg: Any) -> Any:
        await self._ready.wait()
        async with self._lock:
            if name == ENQUEUE_RUN_UPDATE:
                return await self._enqueue(_decode(EnqueueRunRequest, arg))
            if name == CANCEL_RUN_UPDATE:
                return await self._cancel(_decode(RunCancelRequest, arg))
            if name == RUN_DONE_UPDATE:
                return await self._run_done(_decode(RunDoneRequest, arg))
        return await super().handle_update(name, arg)

    async def handle_signal(self, name: str, arg: Any) -> None:
        if name not in (RUN_GRANTED_SIGNAL, RUN_STARTED_SIGNAL, RUN_DONE_SIGNAL):
            await super().handle_signal(name, arg)
        self._signals.put_nowait((name, arg))

    def handle_query(self, name: str, *args: Any) -> Any:
        if name == RUN_STATUS_QUERY:
            owner_namespace, ticket_id = args
            return self._run_status(owner_namespace, ticket_id)
        if name == LIST_QUEUED_RUNS_QUERY:
            return self.state.active_views() if self.state else []
        return super().handle_query(name, *args)

    # ------------------------------------------------------------------
    # Updates
    def _validate_enqueue(self, req: EnqueueRunRequest) -> None:
        if not req.ticket_id or not req.owner_namespace:
            raise InvalidRequestError("ticket_id and owner_namespace are required")
        if not req.runner_id or req.runner_id != self.runner_id:
            raise InvalidRequestError("runner_id must match semaphore runner")
        if req.enqueued_at is None:
            raise InvalidRequestError("enqueued_at is required")
        if not req.required_runner_ids or not req.leader_runner_id:
            raise InvalidRequestError("required_runner_ids and leader_runner_id are required")
        if req.leader_runner_id not in req.required_runner_ids:
            raise InvalidRequestError("leader_runner_id must be included in required_runner_ids")

    async def _enqueue(self, req: EnqueueRunRequest) -> EnqueueRunResponse:
        self._validate_enqueue(req)
        state = self.state

        existing = state.run_tickets.get(req.ticket_id)
        if existing is not None:
            if existing.request.owner_namespace != req.owner_namespace:
                raise InvalidRequestError("ticket owner mismatch")
            view = state.status_view(req.ticket_id)
            return EnqueueRunResponse(
                ticket_id=req.ticket_id,
                status=view.status,
                position=view.position,
                line_len=view.line_len,
            )

        if req.max_pipelines_in_queue > 0 and len(state.run_queue) >= req.max_pipelines_in_queue:
            raise QueueLimitExceededError(
                f"runner {self.runner_id} queue is full "
                f"({len(state.run_queue)}/{req.max_pipelines_in_queue})"
            )

        state.run_tickets[req.ticket_id] = RunTicketState(request=req)
        state.run_queue.append(req.ticket_id)
        state.sort_queue()
        position, line_len = state.queue_position(req.ticket_id)
        await self._commit()
        logger.info(
            f"Enqueued ticket {req.ticket_id} on runner {self.runner_id} at position {position}/{line_len}"
        )
        return EnqueueRunResponse(
            ticket_id=req.ticket_id, status=RunStatus.QUEUED, position=position, line_len=line_len
        )

    async def _cancel(self, req: RunCancelRequest) -> RunStatusView:
        if not req.ticket_id or not req.owner_namespace:
            raise InvalidRequestError("ticket_id and owner_namespace are required")
        state = self.state
        ticket = state.run_tickets.get(req.ticket_id)
        if ticket is None or ticket.request.owner_namespace != req.owner_namespace:
            return RunStatusView.not_found(req.ticket_id, self.runner_id)

        if ticket.status in (RunStatus.QUEUED, RunStatus.STARTING):
            view = state.status_view(req.ticket_id)
            self._remove_ticket(req.ticket_id)
            await self._commit()
            logger.info(
                f"Canceled ticket {req.ticket_id} on runner {self.runner_id}"
                + (f": {req.reason}" if req.reason else "")
            )
            view.status = RunStatus.CANCELED
            view.position = view.line_len = 0
            return view
        if ticket.status is RunStatus.RUNNING:
            ticket.cancel_requested = True
            await self._commit()
        return state.status_view(req.ticket_id)

    async def _run_done(self, req: RunDoneRequest) -> RunStatusView:
        if not req.ticket_id or not req.owner_namespace:
            raise InvalidRequestError("ticket_id and owner_namespace are required")
        state = self.state
        ticket = state.run_tickets.get(req.ticket_id)
        if ticket is None or ticket.request.owner_namespace != req.owner_namespace:
            return RunStatusView.not_found(req.ticket_id, self.runner_id)

        view = state.status_view(req.ticket_id)
        await self._finalize(
            req.ticket_id,
            ticket,
            req.workflow_id or ticket.workflow_id,
            req.run_id or ticket.run_id,
            signal_followers=ticket.request.leader_runner_id == self.runner_id,
        )
        view.status = RunStatus.DONE
        view.position = view.line_len = 0
        return view

    def _run_status(self, owner_namespace: str, ticket_id: str) -> RunStatusView:
        if self.state is None or not owner_namespace or not ticket_id:
            return RunStatusView.not_found(ticket_id, self.runner_id)
        ticket = self.state.run_tickets.get(ticket_id)
        if ticket is None or ticket.request.owner_namespace != owner_namespace:
            return RunStatusView.not_found(ticket_id, self.runner_id)
        return self.state.status_view(ticket_id)

    # ------------------------------------------------------------------
    # Signals
    async def _process_signals(self, ctx: "WorkflowContext") -> None:
        while True:
            name, arg = await self._signals.get()
            async with self._lock:
                try:
                    await self._apply_signal(name, arg)
                except InvalidRequestError as exc:
                    logger.error(f"Semaphore {self.runner_id} dropped signal {name}: {exc}")

    async def _apply_signal(self, name: str, arg: Any) -> None:
        state = self.state
        if name == RUN_GRANTED_SIGNAL:
            signal = _decode(RunGrantedSignal, arg)
            ticket = state.run_tickets.get(signal.ticket_id)
            if ticket is None or not signal.runner_id:
                return
            if signal.runner_id not in ticket.granted_runner_ids:
                ticket.granted_runner_ids.append(signal.runner_id)
            await self._commit()
        elif name == RUN_STARTED_SIGNAL:
            signal = _decode(RunStartedSignal, arg)
            ticket = state.run_tickets.get(signal.ticket_id)
            if ticket is None:
                return
            ticket.status = RunStatus.RUNNING
            ticket.workflow_id = signal.workflow_id
            ticket.run_id = signal.run_id
            ticket.workflow_namespace = signal.workflow_namespace
            ticket.started_at = self._now()
            await self._commit()
        elif name == RUN_DONE_SIGNAL:
            signal = _decode(RunDoneSignal, arg)
            ticket = state.run_tickets.get(signal.ticket_id)
            if ticket is None:
                return
            await self._finalize(
                signal.ticket_id, ticket, signal.workflow_id, signal.run_id, signal_followers=False
            )

    async def _signal_runner(self, runner_id: str, name: str, payload: dict) -> None:
        engine = self._ctx.clients.engine(self._ctx.info.namespace)
        await engine.signal(semaphore_workflow_id(runner_id), name, payload)

    async def _signal_followers(self, ticket: RunTicketState, name: str, payload: dict) -> None:
        for runner_id in ticket.request.required_runner_ids:
            if runner_id == self.runner_id:
                continue
            try:
                await self._signal_runner(runner_id, name, payload)
            except StepflowError as exc:
                logger.warning(f"Failed to signal {name} to runner {runner_id}: {exc}")

    # ------------------------------------------------------------------
    # Granting and starting runs
    def _now(self) -> datetime:
        return self._ctx.now() if self._ctx else datetime.now(timezone.utc)

    def _available_slots(self) -> int:
        used = sum(
            1
            for t in self.state.run_tickets.values()
            if t.status in (RunStatus.STARTING, RunStatus.RUNNING)
        )
        return max(self.state.capacity - used, 0)

    def _next_queued(self) -> Optional[str]:
        state = self.state
        while state.run_queue:
            ticket_id = state.run_queue[0]
            ticket = state.run_tickets.get(ticket_id)
            if ticket is not None and ticket.status is RunStatus.QUEUED:
                return ticket_id
            state.run_queue.pop(0)
        return None

    def _remove_ticket(self, ticket_id: str) -> None:
        if ticket_id in self.state.run_queue:
            self.state.run_queue.remove(ticket_id)
        self.state.run_tickets.pop(ticket_id, None)

    async def _run_starter(self, ctx: "WorkflowContext") -> None:
        while True:
            await self._start_requested.wait()
            self._start_requested.clear()
            async with self._lock:
                await self._process_run_queue(ctx)

    async def _process_run_queue(self, ctx: "WorkflowContext") -> None:
        await self._start_ready_runs(ctx)
        while self._available_slots() > 0:
            ticket_id = self._next_queued()
            if ticket_id is None:
                return
            await self._grant(ctx, ticket_id)
            await self._start_ready_runs(ctx)

    async def _start_ready_runs(self, ctx: "WorkflowContext") -> None:
        ready = [
            t
            for t in self.state.run_tickets.values()
            if t.status is RunStatus.STARTING
            and t.request.leader_runner_id == self.runner_id
            and not t.workflow_id
            and t.all_granted()
        ]
        for ticket in sorted(ready, key=RunTicketState.sort_key):
            await self._start_pipeline(ctx, ticket)

    async def _grant(self, ctx: "WorkflowContext", ticket_id: str) -> None:
        ticket = self.state.run_tickets[ticket_id]
        self.state.run_queue.remove(ticket_id)
        ticket.status = RunStatus.STARTING
        ticket.started_at = self._now()
        if self.runner_id not in ticket.granted_runner_ids:
            ticket.granted_runner_ids.append(self.runner_id)
        await self._commit()
        logger.info(f"Granted ticket {ticket_id} on runner {self.runner_id}")

        leader = ticket.request.leader_runner_id
        if leader != self.runner_id:
            try:
                await self._signal_runner(
                    leader,
                    RUN_GRANTED_SIGNAL,
                    RunGrantedSignal(ticket_id=ticket_id, runner_id=self.runner_id).model_dump(),
                )
            except StepflowError as exc:
                await self._mark_failed(ticket, exc)

    async def _start_pipeline(self, ctx: "WorkflowContext", ticket: RunTicketState) -> None:
        req = ticket.request
        try:
            result = await ctx.execute_activity(
                self.start_activity,
                ActivityInput(
                    payload={
                        "ticket_id": req.ticket_id,
                        "owner_namespace": req.owner_namespace,
                        "required_runner_ids": req.required_runner_ids,
                        "leader_runner_id": req.leader_runner_id,
                        "pipeline_identifier": req.pipeline_identifier,
                        "yaml": req.yaml,
                        "pipeline_config": req.pipeline_config,
                        "memo": req.memo,
                    }
                ),
                ctx.activity_options.with_max_attempts(1),
            )
        except Exception as exc:
            logger.error(f"Failed to start pipeline for ticket {req.ticket_id}: {exc}")
            await self._mark_failed(ticket, exc)
            await self._signal_followers(
                ticket, RUN_DONE_SIGNAL, RunDoneSignal(ticket_id=req.ticket_id).model_dump()
            )
            return

        output = result.output or {}
        ticket.status = RunStatus.RUNNING
        ticket.workflow_id = output.get("workflow_id", "")
        ticket.run_id = output.get("run_id", "")
        ticket.workflow_namespace = output.get("workflow_namespace", "")
        ticket.started_at = self._now()
        await self._commit()
        logger.info(
            f"Ticket {req.ticket_id} running as {ticket.workflow_namespace}/{ticket.workflow_id}"
        )
        await self._signal_followers(
            ticket,
            RUN_STARTED_SIGNAL,
            RunStartedSignal(
                ticket_id=req.ticket_id,
                workflow_id=ticket.workflow_id,
                run_id=ticket.run_id,
                workflow_namespace=ticket.workflow_namespace,
            ).model_dump(),
        )

    async def _mark_failed(self, ticket: RunTicketState, error: BaseException) -> None:
        ticket.status = RunStatus.FAILED
        ticket.error_message = str(error)
        ticket.done_at = self._now()
        await self._commit()

    async def _finalize(
        self,
        ticket_id: str,
        ticket: RunTicketState,
        workflow_id: str,
        run_id: str,
        signal_followers: bool,
    ) -> None:
        if signal_followers:
            await self._signal_followers(
                ticket,
                RUN_DONE_SIGNAL,
                RunDoneSignal(ticket_id=ticket_id, workflow_id=workflow_id, run_id=run_id).model_dump(),
            )
        self._remove_ticket(ticket_id)
        await self._commit()
        logger.info(f"Released ticket {ticket_id} on runner {self.runner_id} ({workflow_id}/{run_id})")

    # ------------------------------------------------------------------
    # Safety net
    async def _safety_net(self, ctx: "WorkflowContext") -> None:
        while True:
            await self._has_running.wait()
            await ctx.sleep(self.safety_net_interval)
            async with self._lock:
                await self._check_run_completion(ctx)

    async def _check_run_completion(self, ctx: "WorkflowContext") -> None:
        running = [
            t
            for t in self.state.run_tickets.values()
            if t.status is RunStatus.RUNNING and t.workflow_id and t.workflow_namespace
        ]
        for ticket in sorted(running, key=RunTicketState.sort_key):
            try:
                result = await ctx.execute_activity(
                    self.check_activity,
                    ActivityInput(
                        payload={
                            "workflow_id": ticket.workflow_id,
                            "run_id": ticket.run_id,
                            "workflow_namespace": ticket.workflow_namespace,
                        }
                    ),
                    ctx.activity_options.with_max_attempts(1),
                )
            except Exception as exc:
                logger.error(f"Run completion check failed for ticket {ticket.request.ticket_id}: {exc}")
                continue
            if not (result.output or {}).get("closed"):
                continue
            logger.info(f"Run {ticket.workflow_id} of ticket {ticket.request.ticket_id} closed")
            await self._finalize(
                ticket.request.ticket_id,
                ticket,
                ticket.workflow_id,
                ticket.run_id,
                signal_followers=ticket.request.leader_runner_id == self.runner_id,
            )
