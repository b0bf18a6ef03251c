from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .canonical import fingerprint
from .errors import (
    CircuitBreakerTripped,
    InvalidStateTransition,
    StepRetryLimitExceeded,
    SwarmError,
    TaskAborted,
    TransientApiError,
)
from .governor import ResourceGovernor
from .llm import CompletionClient, ProducerName
from .models import (
    TASK_STATE_TRANSITIONS,
    ApiCallRecord,
    CriticDecision,
    Plan,
    Step,
    StepAttempt,
    StepRecord,
    TaskSpecification,
    TaskState,
    VerifierReport,
)
from .producers import Coder, Critic, Planner, ProducerResult, Verifier
from .profile import ANDROID_PROFILE, ProjectProfile
from .settings import RuntimeSettings
from .state_store import SwarmStateStore
from .workspace import WorkspaceMaterializer

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative abort flag, safe to set from a signal handler or another thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskAborted()


@dataclass
class OrchestratorContext:
    """In-memory state of the running task, owned by one orchestrator.

    Threaded explicitly through every graph node; the durable store mirrors
    it after each mutation.
    """

    task_id: str
    spec: TaskSpecification
    start_time: datetime
    cancellation: CancellationToken
    state: TaskState = TaskState.PLANNING
    plan: Plan | None = None
    current_step_index: int = 0
    completed_files: list[str] = field(default_factory=list)
    failed_steps: list[int] = field(default_factory=list)
    api_call_count: int = 0
    total_tokens: int = 0
    consecutive_step_failures: int = 0
    report: VerifierReport | None = None


class TaskGraphState(TypedDict, total=False):
    context: OrchestratorContext


class StepGraphState(TypedDict, total=False):
    context: OrchestratorContext
    attempt: StepAttempt
    slot_reruns: int
    accepted: bool


class TaskOrchestrator:
    """Task graph: plan -> step (once per plan step) -> verify -> complete.

    Each plan step runs in a nested step graph:
    begin_attempt -> generate -> review -> accept | begin_attempt | exhausted.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        client: CompletionClient | None = None,
        store: SwarmStateStore | None = None,
        workspace: WorkspaceMaterializer | None = None,
        governor: ResourceGovernor | None = None,
        profile: ProjectProfile = ANDROID_PROFILE,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.client = client if client is not None else CompletionClient.from_settings(self.settings)
        self.store = store if store is not None else SwarmStateStore(self.settings.database_path)
        self.workspace = workspace if workspace is not None else WorkspaceMaterializer(self.settings.workspace_root_path)
        self.governor = governor if governor is not None else ResourceGovernor.from_settings(self.settings)
        self.planner = Planner(self.client, profile)
        self.coder = Coder(
            self.client,
            profile,
            max_file_bytes=self.settings.max_file_bytes,
            max_output_tokens=self.settings.max_output_tokens,
        )
        self.critic = Critic(self.client, profile)
        self.verifier = Verifier(self.client, profile)
        self.cancellation = CancellationToken()
        self.context: OrchestratorContext | None = None
        self.graph = self._build_graph().compile()
        self.step_graph = self._build_step_graph().compile()

    # ------------------------------------------------------------------
    # Graph wiring
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(TaskGraphState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("step", self._step_node)
        graph.add_node("verify", self._verify_node)
        graph.add_node("complete", self._complete_node)

        graph.add_edge(START, "plan")
        graph.add_edge("plan", "step")
        graph.add_edge("verify", "complete")
        graph.add_edge("complete", END)
        return graph

    def _build_step_graph(self) -> StateGraph:
        graph = StateGraph(StepGraphState)
        graph.add_node("begin_attempt", self._begin_attempt_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("review", self._review_node)
        graph.add_node("accept", self._accept_node)
        graph.add_node("exhausted", self._exhausted_node)

        graph.add_edge(START, "begin_attempt")
        graph.add_edge("begin_attempt", "generate")
        graph.add_edge("accept", END)
        graph.add_edge("exhausted", END)
        return graph

    def _graph_config(self) -> dict[str, Any]:
        return {"recursion_limit": self.settings.recursion_limit}

    # ------------------------------------------------------------------
    # Shared bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, ctx: OrchestratorContext, state: TaskState, error_message: str | None = None) -> None:
        if state not in TASK_STATE_TRANSITIONS[ctx.state]:
            raise InvalidStateTransition(f"Task {ctx.task_id} cannot move from {ctx.state.value} to {state.value}")
        self.store.update_task_state(ctx.task_id, state, error_message)
        ctx.state = state

    def _account(self, ctx: OrchestratorContext, producer: ProducerName, result: ProducerResult[Any]) -> None:
        record = result.record
        if record is None:
            record = ApiCallRecord(
                task_id=ctx.task_id,
                producer=producer,
                prompt_tokens=0,
                completion_tokens=0,
                timestamp=datetime.now(UTC),
            )
        ctx.api_call_count += 1
        ctx.total_tokens += record.prompt_tokens + record.completion_tokens
        self.store.record_api_call(record)
        self.store.update_task_counters(ctx.task_id, ctx.api_call_count, ctx.total_tokens)

    # ------------------------------------------------------------------
    # Task graph nodes
    # ------------------------------------------------------------------

    def _plan_node(self, state: TaskGraphState) -> dict[str, Any]:
        ctx = state["context"]
        logger.info("Planning phase started task_id=%s", ctx.task_id)
        self.governor.check(ctx)
        result = self.planner.generate_plan(ctx.task_id, ctx.spec)
        self._account(ctx, "planner", result)

        ctx.plan = result.value
        self.store.update_task_plan(ctx.task_id, ctx.plan)
        self._transition(ctx, TaskState.EXECUTING)
        logger.info("Plan generated task_id=%s steps=%d", ctx.task_id, len(ctx.plan))
        return {"context": ctx}

    def _step_node(self, state: TaskGraphState) -> Command[str]:
        ctx = state["context"]
        assert ctx.plan is not None
        if ctx.current_step_index >= len(ctx.plan):
            logger.info("Execution phase completed task_id=%s", ctx.task_id)
            return Command(goto="verify", update={"context": ctx})

        ctx.cancellation.raise_if_cancelled()
        step = ctx.plan.steps[ctx.current_step_index]
        logger.info("Step started task_id=%s step=%d file=%s", ctx.task_id, step.step_number, step.file_path)
        self.step_graph.invoke(
            {"context": ctx, "attempt": StepAttempt(step=step), "slot_reruns": 0, "accepted": False},
            config=self._graph_config(),
        )
        ctx.current_step_index += 1
        return Command(goto="step", update={"context": ctx})

    def _verify_node(self, state: TaskGraphState) -> dict[str, Any]:
        ctx = state["context"]
        logger.info("Verification phase started task_id=%s", ctx.task_id)
        self._transition(ctx, TaskState.VERIFYING)
        self.governor.check(ctx)

        files = self.workspace.list_files(ctx.task_id)
        result = self.verifier.verify_project(ctx.task_id, files, ctx.spec)
        self._account(ctx, "verifier", result)
        report = result.value
        ctx.report = report

        logger.info(
            "Verification report task_id=%s quality_score=%.2f warnings=%d missing_items=%d",
            ctx.task_id,
            report.quality_score,
            len(report.warnings),
            len(report.missing_items),
        )
        if report.quality_score < 0.5:
            logger.warning("Low quality score task_id=%s score=%.2f", ctx.task_id, report.quality_score)
        if report.warnings:
            logger.warning("Verifier warnings task_id=%s warnings=%s", ctx.task_id, report.warnings)
        return {"context": ctx}

    def _complete_node(self, state: TaskGraphState) -> dict[str, Any]:
        ctx = state["context"]
        self._transition(ctx, TaskState.COMPLETED)
        return {"context": ctx}

    # ------------------------------------------------------------------
    # Step graph nodes
    # ------------------------------------------------------------------

    def _begin_attempt_node(self, state: StepGraphState) -> dict[str, Any]:
        ctx = state["context"]
        ctx.cancellation.raise_if_cancelled()
        attempt = state["attempt"]
        attempt.attempt += 1
        logger.debug(
            "Attempt %d/%d task_id=%s step=%d",
            attempt.attempt,
            self.settings.max_step_attempts,
            ctx.task_id,
            attempt.step.step_number,
        )
        return {"attempt": attempt}

    def _generate_node(self, state: StepGraphState) -> Command[str]:
        ctx = state["context"]
        attempt = state["attempt"]
        ctx.cancellation.raise_if_cancelled()
        self.governor.check(ctx)
        try:
            result = self.coder.generate_file(
                ctx.task_id,
                attempt.step,
                ctx.spec,
                list(ctx.completed_files),
                attempt.issues,
            )
        except TransientApiError as exc:
            reruns = int(state.get("slot_reruns", 0)) + 1
            logger.error(
                "Step execution error task_id=%s step=%d attempt=%d error=%s",
                ctx.task_id,
                attempt.step.step_number,
                attempt.attempt,
                exc,
            )
            if reruns > self.settings.max_step_attempts:
                raise
            return Command(goto="generate", update={"slot_reruns": reruns})

        self._account(ctx, "coder", result)
        attempt.content = result.value
        return Command(goto="review", update={"attempt": attempt})

    def _review_node(self, state: StepGraphState) -> Command[str]:
        ctx = state["context"]
        attempt = state["attempt"]
        step = attempt.step
        assert attempt.content is not None
        self.governor.check(ctx)
        result = self.critic.review_file(ctx.task_id, step, attempt.content, ctx.spec)
        self._account(ctx, "critic", result)

        attempt.decision = result.value.decision
        attempt.issues = list(result.value.issues)
        self.store.record_step(
            StepRecord(
                task_id=ctx.task_id,
                step_number=step.step_number,
                file_path=step.file_path,
                attempt=attempt.attempt,
                generated_content=attempt.content,
                critic_decision=attempt.decision,
                critic_issues=attempt.issues,
                timestamp=datetime.now(UTC),
            )
        )

        if attempt.decision == CriticDecision.ACCEPT:
            return Command(goto="accept", update={"attempt": attempt})
        logger.warning(
            "Step rejected task_id=%s step=%d attempt=%d issues=%s",
            ctx.task_id,
            step.step_number,
            attempt.attempt,
            [issue.model_dump(mode="json") for issue in attempt.issues],
        )
        if attempt.attempt < self.settings.max_step_attempts:
            return Command(goto="begin_attempt", update={"attempt": attempt})
        return Command(goto="exhausted", update={"attempt": attempt})

    def _accept_node(self, state: StepGraphState) -> dict[str, Any]:
        ctx = state["context"]
        attempt = state["attempt"]
        assert attempt.content is not None
        self.workspace.write_file(ctx.task_id, attempt.step.file_path, attempt.content)
        ctx.completed_files.append(attempt.step.file_path)
        ctx.consecutive_step_failures = 0
        logger.info(
            "Step accepted task_id=%s step=%d attempt=%d",
            ctx.task_id,
            attempt.step.step_number,
            attempt.attempt,
        )
        return {"accepted": True}

    def _exhausted_node(self, state: StepGraphState) -> dict[str, Any]:
        ctx = state["context"]
        step: Step = state["attempt"].step
        ctx.consecutive_step_failures += 1
        if ctx.consecutive_step_failures >= self.settings.circuit_breaker_threshold:
            raise CircuitBreakerTripped(ctx.consecutive_step_failures)
        if self.settings.step_failure_policy == "abort":
            raise StepRetryLimitExceeded(step.step_number)
        ctx.failed_steps.append(step.step_number)
        logger.error(
            "Step %d exceeded retry limit, continuing task_id=%s consecutive_failures=%d",
            step.step_number,
            ctx.task_id,
            ctx.consecutive_step_failures,
        )
        return {"accepted": False}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute_task(self, spec: TaskSpecification | Mapping[str, Any]) -> Path:
        """Run one task to completion and return its workspace directory.

        Any error ends the task as ``FAILED`` (in memory and in the store)
        and is re-raised to the caller.
        """
        task_spec = spec if isinstance(spec, TaskSpecification) else TaskSpecification.parse(spec)
        if self.context is not None and not self.context.state.is_terminal:
            raise SwarmError(f"Orchestrator is already executing task {self.context.task_id}")

        self.cancellation = CancellationToken()
        ctx = OrchestratorContext(
            task_id=str(uuid.uuid4()),
            spec=task_spec,
            start_time=datetime.now(UTC),
            cancellation=self.cancellation,
        )
        self.context = ctx
        logger.info(
            "Task started task_id=%s app_name=%s spec_fingerprint=%s",
            ctx.task_id,
            task_spec.app_name,
            fingerprint(task_spec)[:12],
        )

        try:
            self.store.create_task(ctx.task_id, task_spec, start_time=ctx.start_time)
            self.workspace.ensure_workspace(ctx.task_id)
            self.graph.invoke({"context": ctx}, config=self._graph_config())
        except BaseException as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Task failed task_id=%s error=%s", ctx.task_id, message)
            self._record_failure(ctx, message)
            raise

        workspace_path = self.workspace.workspace_path(ctx.task_id)
        logger.info(
            "Task completed task_id=%s api_calls=%d tokens=%d duration_s=%.1f workspace=%s",
            ctx.task_id,
            ctx.api_call_count,
            ctx.total_tokens,
            (datetime.now(UTC) - ctx.start_time).total_seconds(),
            workspace_path,
        )
        return workspace_path

    def _record_failure(self, ctx: OrchestratorContext, message: str) -> None:
        if ctx.state.is_terminal:
            return
        try:
            self.store.update_task_state(ctx.task_id, TaskState.FAILED, message)
        except (KeyError, InvalidStateTransition) as exc:
            # The task row may never have been created.
            logger.error("Unable to record failure for task %s: %s", ctx.task_id, exc)
        ctx.state = TaskState.FAILED

    def abort(self) -> None:
        """Request cooperative cancellation of the running task.

        Observed at the next attempt boundary. Each ``execute_task`` starts
        with a fresh token, so an abort that lands after a task has ended
        does not carry over to the next one.
        """
        self.cancellation.cancel()
        logger.warning("Task abort requested")

    def close(self) -> None:
        self.store.close()
