"""Workflow execution.

A workflow runs its steps in declared order. After a step listed in
``conditional`` its condition is evaluated against that step's parsed
response and control moves to ``onTrue``/``onFalse``: a null target aborts
the run at that step, ``"$end"`` completes it. A revisited step aborts the
run with WorkflowCycleError instead of looping.

Invocation failures halt the run (FAILED) and keep every prior outcome.
There is no rollback; workflows are advisory and never stop a caller from
invoking their capabilities directly.
"""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from atp.auth.session import Session
from atp.errors import ATPError, ConfirmationRequiredError, WorkflowCycleError, WorkflowUnknownStepError
from atp.models.constants import WORKFLOW_END
from atp.models.enums import WorkflowStatus
from atp.models.manifest import Capability, Manifest, Workflow
from atp.observability import bind_context, get_logger, get_metrics, unbind_context
from atp.transport.invoker import CapabilityInvoker, ConfirmationToken, InvocationResult
from atp.workflow.conditions import Condition, parse_condition

logger = get_logger(__name__)

ConfirmCallback = Callable[
    [Capability], Union[Optional[ConfirmationToken], Awaitable[Optional[ConfirmationToken]]]
]

VALID_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.READY: {WorkflowStatus.RUNNING},
    WorkflowStatus.RUNNING: {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.ABORTED,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.ABORTED: set(),
    WorkflowStatus.FAILED: set(),
}


@dataclass(frozen=True)
class StepOutcome:
    """Result of one executed step.

    Attributes:
        step_id: Capability id of the step
        result: Invocation result when the call succeeded
        error: Error that ended the step, if any
        condition: Value of the step's branch condition, when it has one
        next_step: Step chosen next (None when the run stopped here)
    """

    step_id: str
    result: Optional[InvocationResult] = None
    error: Optional[ATPError] = None
    condition: Optional[bool] = None
    next_step: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.error is None


@dataclass
class WorkflowRun:
    """State and history of one workflow run."""

    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.READY
    steps: list[StepOutcome] = field(default_factory=list)
    error: Optional[ATPError] = None
    aborted_at: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def transition(self, new_status: WorkflowStatus) -> None:
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise ValueError(f"workflow run cannot move from {self.status.value} to {new_status.value}")
        self.status = new_status
        if new_status.is_terminal():
            self.finished_at = time.time()

    @property
    def executed_steps(self) -> list[str]:
        return [outcome.step_id for outcome in self.steps]

    @property
    def outputs(self) -> dict[str, Any]:
        """Parsed response body of each successful step."""
        return {
            outcome.step_id: outcome.result.body
            for outcome in self.steps
            if outcome.result is not None
        }


class WorkflowExecutor:
    """Drives a CapabilityInvoker through a manifest's workflows.

    Example:
        >>> executor = WorkflowExecutor(manifest, invoker)
        >>> run = await executor.execute("book-appointment", {"date": "2025-03-01"}, session)
        >>> run.status
        <WorkflowStatus.COMPLETED: 'completed'>
    """

    def __init__(self, manifest: Manifest, invoker: CapabilityInvoker) -> None:
        self.manifest = manifest
        self.invoker = invoker

    def _resolve(self, workflow: Union[Workflow, str]) -> Workflow:
        if isinstance(workflow, Workflow):
            return workflow
        found = self.manifest.get_workflow(workflow)
        if found is None:
            raise ATPError(
                code="atp:workflow/unknown_workflow",
                message=f"Manifest '{self.manifest.name}' declares no workflow '{workflow}'",
                details={"workflow_id": workflow},
            )
        return found

    def check(self, workflow: Workflow) -> dict[str, Condition]:
        """Resolve every step and branch target before anything runs.

        Returns:
            Parsed condition per conditional step

        Raises:
            WorkflowUnknownStepError: A step, conditional key or branch target is unknown
            ConditionSyntaxError: A condition does not parse
        """
        known = set(self.manifest.capability_ids)
        for step in workflow.steps:
            if step not in known:
                raise WorkflowUnknownStepError(workflow.id, step)
        conditions: dict[str, Condition] = {}
        for step, branch in workflow.conditional.items():
            if step not in workflow.steps:
                raise WorkflowUnknownStepError(workflow.id, step)
            for target in (branch.on_true, branch.on_false):
                if target is None or target == WORKFLOW_END:
                    continue
                if target not in known or target not in workflow.steps:
                    raise WorkflowUnknownStepError(workflow.id, target)
            conditions[step] = parse_condition(branch.condition)
        return conditions

    def _arguments_for(
        self,
        capability: Capability,
        shared: dict[str, Any],
        step_arguments: dict[str, dict[str, Any]],
    ) -> dict[str, Any]:
        declared = {parameter.name for parameter in capability.parameters}
        arguments = {name: value for name, value in shared.items() if name in declared}
        arguments.update(step_arguments.get(capability.id, {}))
        return arguments

    async def execute(
        self,
        workflow: Union[Workflow, str],
        initial_arguments: Optional[dict[str, Any]],
        session: Session,
        *,
        confirm: Optional[ConfirmCallback] = None,
        step_arguments: Optional[dict[str, dict[str, Any]]] = None,
    ) -> WorkflowRun:
        """Run a workflow to a terminal state.

        Args:
            workflow: Workflow or its id
            initial_arguments: Shared arguments; each step receives the
                entries matching its declared parameters
            session: Authorized session for the host
            confirm: Called with each confirmation-gated capability; returns
                a ConfirmationToken, or None to decline (the run aborts there)
            step_arguments: Per-step arguments overriding the shared ones

        Returns:
            WorkflowRun with the ordered step outcomes

        Raises:
            WorkflowUnknownStepError: Before any invocation, if a step is unknown
        """
        workflow = self._resolve(workflow)
        conditions = self.check(workflow)
        bind_context(workflow_id=workflow.id)
        try:
            return await self._run(
                workflow,
                conditions,
                dict(initial_arguments or {}),
                step_arguments or {},
                session,
                confirm,
            )
        finally:
            unbind_context("workflow_id")

    async def _run(
        self,
        workflow: Workflow,
        conditions: dict[str, Condition],
        shared: dict[str, Any],
        per_step: dict[str, dict[str, Any]],
        session: Session,
        confirm: Optional[ConfirmCallback],
    ) -> WorkflowRun:
        run = WorkflowRun(workflow_id=workflow.id)
        run.transition(WorkflowStatus.RUNNING)
        logger.info("atp.workflow.started", workflow_id=workflow.id, steps=len(workflow.steps))

        current: Optional[str] = workflow.steps[0]
        visited: list[str] = []
        while current is not None:
            if current in visited:
                run.error = WorkflowCycleError(workflow.id, current, visited + [current])
                run.aborted_at = current
                run.transition(WorkflowStatus.ABORTED)
                break
            visited.append(current)
            capability = self.manifest.get_capability(current)
            assert capability is not None

            token: Optional[ConfirmationToken] = None
            if capability.requires_confirmation and confirm is not None:
                token = await _maybe_await(confirm(capability))
                if token is None:
                    run.error = ConfirmationRequiredError(
                        capability.id,
                        capability.confirmation.message if capability.confirmation else "",
                        "confirmation declined",
                    )
                    run.steps.append(StepOutcome(step_id=current, error=run.error))
                    run.aborted_at = current
                    run.transition(WorkflowStatus.ABORTED)
                    break

            try:
                result = await self.invoker.invoke(
                    capability,
                    self._arguments_for(capability, shared, per_step),
                    session,
                    confirmation=token,
                    workflow_id=workflow.id,
                )
            except ATPError as e:
                logger.warning(
                    "atp.workflow.step_failed",
                    workflow_id=workflow.id,
                    step_id=current,
                    error_code=e.code,
                )
                run.steps.append(StepOutcome(step_id=current, error=e))
                run.error = e
                run.transition(WorkflowStatus.FAILED)
                break

            condition = conditions.get(current)
            if condition is None:
                position = workflow.steps.index(current)
                following = workflow.steps[position + 1] if position + 1 < len(workflow.steps) else None
                run.steps.append(StepOutcome(step_id=current, result=result, next_step=following))
                current = following
                continue

            passed = condition.evaluate(result.body)
            branch = workflow.conditional[current]
            target = branch.on_true if passed else branch.on_false
            logger.debug(
                "atp.workflow.branch",
                workflow_id=workflow.id,
                step_id=current,
                condition=condition.expression,
                passed=passed,
                target=target,
            )
            if target is None:
                run.steps.append(StepOutcome(step_id=current, result=result, condition=passed))
                run.aborted_at = current
                run.transition(WorkflowStatus.ABORTED)
                break
            following = None if target == WORKFLOW_END else target
            run.steps.append(
                StepOutcome(step_id=current, result=result, condition=passed, next_step=following)
            )
            current = following

        if run.status is WorkflowStatus.RUNNING:
            run.transition(WorkflowStatus.COMPLETED)

        get_metrics().increment_counter(
            "atp_workflow_runs_total", {"workflow": workflow.id, "status": run.status.value}
        )
        logger.info(
            "atp.workflow.finished",
            workflow_id=workflow.id,
            status=run.status.value,
            executed=run.executed_steps,
            aborted_at=run.aborted_at,
        )
        return run


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
