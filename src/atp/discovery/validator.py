"""Manifest validation.

Turns a raw manifest document into a typed :class:`~atp.models.Manifest`,
rejecting it wholesale when anything is structurally or referentially
wrong. Validation is batched: every problem is collected and reported in
one :class:`~atp.errors.ManifestValidationError`.

Checks run in order of increasing cost:

1. required fields present and typed, version is semver (pydantic)
2. capability, workflow and parameter name uniqueness
3. parameter constraint consistency, endpoint placeholders, https endpoints
4. ``$ref`` resolution into ``schemas``; schemas are valid JSON Schema
5. required scopes are grantable by some declared auth scheme
6. workflow steps, conditional keys, branch targets and conditions
7. the workflow step graph is acyclic
"""

from __future__ import annotations

import re
from typing import Any, Iterator
from urllib.parse import urlsplit

import jsonschema
from pydantic import ValidationError

from atp.errors import (
    ConditionSyntaxError,
    ManifestValidationError,
    ValidationErrorKind,
    ValidationIssue,
)
from atp.models.constants import SCHEMA_REF_PREFIX, WORKFLOW_END
from atp.models.enums import ParameterLocation, ParameterType
from atp.models.manifest import Capability, Manifest, Parameter, Workflow
from atp.observability import get_logger
from atp.workflow.conditions import parse_condition

logger = get_logger(__name__)

PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")


def _matches_type(value: Any, ptype: ParameterType) -> bool:
    """Check a JSON value against a parameter type tag."""
    if ptype is ParameterType.STRING:
        return isinstance(value, str)
    if ptype is ParameterType.BOOLEAN:
        return isinstance(value, bool)
    if ptype is ParameterType.INTEGER:
        if isinstance(value, bool):
            return False
        return isinstance(value, int) or (isinstance(value, float) and value.is_integer())
    if ptype is ParameterType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if ptype is ParameterType.ARRAY:
        return isinstance(value, list)
    return isinstance(value, dict)


def _iter_refs(node: Any, path: str) -> Iterator[tuple[str, str]]:
    """Yield ``(path, ref)`` for every ``$ref`` in a schema tree."""
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str):
            yield f"{path}.$ref", ref
        for key, child in node.items():
            if key != "$ref":
                yield from _iter_refs(child, f"{path}.{key}")
    elif isinstance(node, list):
        for index, child in enumerate(node):
            yield from _iter_refs(child, f"{path}.{index}")


class _IssueCollector:
    def __init__(self) -> None:
        self.issues: list[ValidationIssue] = []

    def add(self, kind: ValidationErrorKind, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(kind=kind, path=path, message=message))

    def schema(self, path: str, message: str) -> None:
        self.add(ValidationErrorKind.SCHEMA_VIOLATION, path, message)


class ManifestValidator:
    """Parses and validates raw manifest documents.

    Example:
        >>> validator = ManifestValidator()
        >>> manifest = validator.validate(document)
        >>> manifest, issues = validator.check(document)
    """

    def __init__(self, *, require_https_endpoints: bool = True) -> None:
        self._require_https = require_https_endpoints

    def validate(self, raw: Any) -> Manifest:
        """Return the typed manifest or raise with every problem found.

        Raises:
            ManifestValidationError: If any check fails
        """
        manifest, issues = self.check(raw)
        if issues or manifest is None:
            logger.warning(
                "atp.validator.rejected",
                issue_count=len(issues),
                kinds=sorted({issue.kind.value for issue in issues}),
            )
            raise ManifestValidationError(issues)
        return manifest

    def check(self, raw: Any) -> tuple[Manifest | None, list[ValidationIssue]]:
        """Validate without raising.

        Returns:
            ``(manifest, [])`` when valid, otherwise ``(None, issues)``
        """
        collector = _IssueCollector()
        if not isinstance(raw, dict):
            collector.schema("$", f"manifest must be a JSON object, got {type(raw).__name__}")
            return None, collector.issues

        try:
            manifest = Manifest.model_validate(raw)
        except ValidationError as e:
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"]) or "$"
                collector.schema(location, error["msg"])
            return None, collector.issues

        self._check_uniqueness(manifest, collector)
        for index, capability in enumerate(manifest.capabilities):
            self._check_capability(index, capability, collector)
        self._check_refs(manifest, collector)
        self._check_scopes(manifest, collector)
        for index, workflow in enumerate(manifest.workflows):
            self._check_workflow_references(index, workflow, manifest, collector)
        for index, workflow in enumerate(manifest.workflows):
            self._check_workflow_cycles(index, workflow, collector)

        if collector.issues:
            return None, collector.issues
        return manifest, []

    # ------------------------------------------------------------------ #
    # Identity
    # ------------------------------------------------------------------ #

    def _check_uniqueness(self, manifest: Manifest, collector: _IssueCollector) -> None:
        seen: dict[str, int] = {}
        for index, capability in enumerate(manifest.capabilities):
            if capability.id in seen:
                collector.add(
                    ValidationErrorKind.DUPLICATE_ID,
                    f"capabilities.{index}.id",
                    f"capability id '{capability.id}' already declared at "
                    f"capabilities.{seen[capability.id]}",
                )
            else:
                seen[capability.id] = index

        seen_workflows: dict[str, int] = {}
        for index, workflow in enumerate(manifest.workflows):
            if workflow.id in seen_workflows:
                collector.add(
                    ValidationErrorKind.DUPLICATE_ID,
                    f"workflows.{index}.id",
                    f"workflow id '{workflow.id}' already declared at "
                    f"workflows.{seen_workflows[workflow.id]}",
                )
            else:
                seen_workflows[workflow.id] = index

        for index, capability in enumerate(manifest.capabilities):
            names: set[str] = set()
            for p_index, parameter in enumerate(capability.parameters):
                if parameter.name in names:
                    collector.add(
                        ValidationErrorKind.DUPLICATE_ID,
                        f"capabilities.{index}.parameters.{p_index}.name",
                        f"parameter '{parameter.name}' declared twice in '{capability.id}'",
                    )
                names.add(parameter.name)

    # ------------------------------------------------------------------ #
    # Capabilities
    # ------------------------------------------------------------------ #

    def _check_capability(
        self, index: int, capability: Capability, collector: _IssueCollector
    ) -> None:
        base = f"capabilities.{index}"
        for p_index, parameter in enumerate(capability.parameters):
            self._check_parameter(f"{base}.parameters.{p_index}", parameter, collector)

        placeholders = PLACEHOLDER_RE.findall(capability.endpoint)
        for name in placeholders:
            parameter = capability.get_parameter(name)
            if parameter is None:
                collector.schema(
                    f"{base}.endpoint",
                    f"path placeholder '{{{name}}}' has no matching parameter",
                )
            elif not parameter.required and parameter.default is None:
                collector.schema(
                    f"{base}.endpoint",
                    f"path parameter '{name}' must be required or have a default",
                )
            elif parameter.location not in (None, ParameterLocation.PATH):
                collector.schema(
                    f"{base}.endpoint",
                    f"path placeholder '{{{name}}}' names a parameter placed "
                    f"in {parameter.location.value}",
                )
        for p_index, parameter in enumerate(capability.parameters):
            if parameter.location is ParameterLocation.PATH and parameter.name not in placeholders:
                collector.schema(
                    f"{base}.parameters.{p_index}.in",
                    f"parameter '{parameter.name}' is placed in the path but the endpoint "
                    f"has no '{{{parameter.name}}}' placeholder",
                )

        scheme = urlsplit(capability.endpoint).scheme
        if scheme and self._require_https and scheme.lower() != "https":
            collector.schema(
                f"{base}.endpoint",
                f"absolute endpoint must use https, got '{scheme}'",
            )

    def _check_parameter(self, path: str, parameter: Parameter, collector: _IssueCollector) -> None:
        ptype = parameter.type
        if parameter.enum is not None:
            if not parameter.enum:
                collector.schema(f"{path}.enum", "enum must list at least one value")
            for e_index, value in enumerate(parameter.enum):
                if not _matches_type(value, ptype):
                    collector.schema(
                        f"{path}.enum.{e_index}",
                        f"enum value {value!r} is not of type {ptype.value}",
                    )

        for bound in ("minimum", "maximum"):
            value = getattr(parameter, bound)
            if value is not None and not ptype.is_numeric():
                collector.schema(f"{path}.{bound}", f"{bound} is only valid for numeric types")
        if (
            parameter.minimum is not None
            and parameter.maximum is not None
            and parameter.minimum > parameter.maximum
        ):
            collector.schema(
                f"{path}.minimum",
                f"minimum {parameter.minimum} exceeds maximum {parameter.maximum}",
            )

        if parameter.pattern is not None:
            if ptype is not ParameterType.STRING:
                collector.schema(f"{path}.pattern", "pattern is only valid for string types")
            try:
                re.compile(parameter.pattern)
            except re.error as e:
                collector.schema(f"{path}.pattern", f"pattern does not compile: {e}")

        if parameter.format is not None and ptype is not ParameterType.STRING:
            collector.schema(f"{path}.format", "format is only valid for string types")

        if parameter.items is not None and ptype is not ParameterType.ARRAY:
            collector.schema(f"{path}.items", "items is only valid for array types")

        if parameter.default is not None:
            default = parameter.default
            if not _matches_type(default, ptype):
                collector.schema(
                    f"{path}.default", f"default {default!r} is not of type {ptype.value}"
                )
            elif parameter.enum is not None and default not in parameter.enum:
                collector.schema(f"{path}.default", f"default {default!r} is not in enum")
            elif ptype.is_numeric():
                if parameter.minimum is not None and default < parameter.minimum:
                    collector.schema(f"{path}.default", "default is below minimum")
                if parameter.maximum is not None and default > parameter.maximum:
                    collector.schema(f"{path}.default", "default is above maximum")

    # ------------------------------------------------------------------ #
    # Schemas
    # ------------------------------------------------------------------ #

    def _check_refs(self, manifest: Manifest, collector: _IssueCollector) -> None:
        trees: list[tuple[str, Any]] = [
            (f"capabilities.{index}.response", capability.response)
            for index, capability in enumerate(manifest.capabilities)
            if capability.response is not None
        ]
        trees.extend((f"schemas.{name}", schema) for name, schema in manifest.schemas.items())

        for path, tree in trees:
            for ref_path, ref in _iter_refs(tree, path):
                if not ref.startswith(SCHEMA_REF_PREFIX):
                    collector.add(
                        ValidationErrorKind.DANGLING_REFERENCE,
                        ref_path,
                        f"reference '{ref}' must point into '{SCHEMA_REF_PREFIX}'",
                    )
                    continue
                name = ref[len(SCHEMA_REF_PREFIX) :].split("/", 1)[0]
                if name not in manifest.schemas:
                    collector.add(
                        ValidationErrorKind.DANGLING_REFERENCE,
                        ref_path,
                        f"reference '{ref}' does not resolve to a declared schema",
                    )

        for name, schema in manifest.schemas.items():
            validator_cls = jsonschema.validators.validator_for(
                schema, default=jsonschema.Draft202012Validator
            )
            try:
                validator_cls.check_schema(schema)
            except jsonschema.SchemaError as e:
                collector.schema(f"schemas.{name}", f"invalid JSON schema: {e.message}")

    # ------------------------------------------------------------------ #
    # Scopes
    # ------------------------------------------------------------------ #

    def _check_scopes(self, manifest: Manifest, collector: _IssueCollector) -> None:
        grantable = manifest.auth.declared_scopes()
        for index, capability in enumerate(manifest.capabilities):
            for s_index, scope in enumerate(capability.required_scopes):
                if scope not in grantable:
                    collector.add(
                        ValidationErrorKind.UNGRANTABLE_SCOPE,
                        f"capabilities.{index}.requiredScopes.{s_index}",
                        f"scope '{scope}' required by '{capability.id}' is not granted "
                        "by any auth scheme",
                    )

    # ------------------------------------------------------------------ #
    # Workflows
    # ------------------------------------------------------------------ #

    def _check_workflow_references(
        self,
        index: int,
        workflow: Workflow,
        manifest: Manifest,
        collector: _IssueCollector,
    ) -> None:
        base = f"workflows.{index}"
        capability_ids = set(manifest.capability_ids)
        steps = set(workflow.steps)

        for s_index, step in enumerate(workflow.steps):
            if step not in capability_ids:
                collector.add(
                    ValidationErrorKind.DANGLING_REFERENCE,
                    f"{base}.steps.{s_index}",
                    f"step '{step}' is not a declared capability",
                )

        for step, branch in workflow.conditional.items():
            path = f"{base}.conditional.{step}"
            if step not in steps:
                collector.add(
                    ValidationErrorKind.UNKNOWN_STEP,
                    path,
                    f"conditional key '{step}' is not a step of workflow '{workflow.id}'",
                )
            for field, target in (("onTrue", branch.on_true), ("onFalse", branch.on_false)):
                if target is None or target == WORKFLOW_END:
                    continue
                if target not in steps:
                    collector.add(
                        ValidationErrorKind.UNKNOWN_STEP,
                        f"{path}.{field}",
                        f"branch target '{target}' is not a step of workflow '{workflow.id}'",
                    )
            try:
                parse_condition(branch.condition)
            except ConditionSyntaxError as e:
                collector.schema(f"{path}.condition", e.message)

    def _check_workflow_cycles(
        self, index: int, workflow: Workflow, collector: _IssueCollector
    ) -> None:
        path = f"workflows.{index}.steps"
        steps = workflow.steps
        if len(set(steps)) != len(steps):
            repeated = sorted({step for step in steps if steps.count(step) > 1})
            collector.add(
                ValidationErrorKind.CYCLIC_WORKFLOW,
                path,
                f"steps revisit {', '.join(repeated)} in workflow '{workflow.id}'",
            )
            return

        cycle = find_cycle(workflow)
        if cycle is not None:
            collector.add(
                ValidationErrorKind.CYCLIC_WORKFLOW,
                path,
                f"workflow '{workflow.id}' can revisit a step: {' -> '.join(cycle)}",
            )


def successors(workflow: Workflow, step: str) -> list[str]:
    """Steps reachable from ``step`` in one move (sequential or conditional)."""
    branch = workflow.conditional.get(step)
    if branch is not None:
        return [
            target
            for target in (branch.on_true, branch.on_false)
            if target is not None and target != WORKFLOW_END and target in workflow.steps
        ]
    position = workflow.steps.index(step)
    if position + 1 < len(workflow.steps):
        return [workflow.steps[position + 1]]
    return []


def find_cycle(workflow: Workflow) -> list[str] | None:
    """Return one cycle in the step graph as a list of step ids, or None.

    Iterative depth-first search over an explicit stack.
    """
    white, grey, black = 0, 1, 2
    color = dict.fromkeys(workflow.steps, white)

    for root in workflow.steps:
        if color[root] != white:
            continue
        color[root] = grey
        path = [root]
        pending = [iter(successors(workflow, root))]
        while pending:
            target = next(pending[-1], None)
            if target is None:
                color[path.pop()] = black
                pending.pop()
            elif color[target] == grey:
                return path[path.index(target) :] + [target]
            elif color[target] == white:
                color[target] = grey
                path.append(target)
                pending.append(iter(successors(workflow, target)))
    return None

