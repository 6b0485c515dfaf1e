"""Workflow execution and the branch-condition language."""

from atp.workflow.conditions import Condition, parse_condition
from atp.workflow.executor import StepOutcome, WorkflowExecutor, WorkflowRun

__all__ = [
    "Condition",
    "StepOutcome",
    "WorkflowExecutor",
    "WorkflowRun",
    "parse_condition",
]
