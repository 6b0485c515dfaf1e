"""Capability argument validation and request placement.

Free-form caller arguments are checked against the capability's declared
parameters before any network activity and turned into TypedValues, a
tagged variant carrying the declared type alongside the value. Routing then
decides where each value travels: path placeholder, query string, JSON body
or header.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable
from urllib.parse import quote, urljoin, urlsplit

from atp.errors import ParameterError
from atp.models.enums import ParameterLocation, ParameterType
from atp.models.manifest import Capability, Parameter

PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class TypedValue:
    """A validated argument tagged with its declared type.

    Example:
        >>> TypedValue(ParameterType.NUMBER, 100).to_query()
        ['100']
        >>> TypedValue(ParameterType.BOOLEAN, True).to_query()
        ['true']
    """

    type: ParameterType
    value: Any

    def to_json(self) -> Any:
        return self.value

    def to_text(self) -> str:
        if self.type is ParameterType.BOOLEAN:
            return "true" if self.value else "false"
        if self.type in (ParameterType.ARRAY, ParameterType.OBJECT):
            return json.dumps(self.value, separators=(",", ":"))
        return str(self.value)

    def to_query(self) -> list[str]:
        """Query-string rendering; arrays become repeated keys."""
        if self.type is ParameterType.ARRAY:
            return [TypedValue(_infer_type(item), item).to_text() for item in self.value]
        return [self.to_text()]


def _infer_type(value: Any) -> ParameterType:
    if isinstance(value, bool):
        return ParameterType.BOOLEAN
    if isinstance(value, int):
        return ParameterType.INTEGER
    if isinstance(value, float):
        return ParameterType.NUMBER
    if isinstance(value, list):
        return ParameterType.ARRAY
    if isinstance(value, dict):
        return ParameterType.OBJECT
    return ParameterType.STRING


def _is_valid_datetime(value: str) -> bool:
    datetime.fromisoformat(value.replace("Z", "+00:00"))
    return True


def _is_valid_date(value: str) -> bool:
    date.fromisoformat(value)
    return True


def _is_valid_uri(value: str) -> bool:
    parts = urlsplit(value)
    return bool(parts.scheme and (parts.netloc or parts.path))


def _is_valid_uuid(value: str) -> bool:
    uuid.UUID(value)
    return True


FORMAT_CHECKERS: dict[str, Callable[[str], bool]] = {
    "date": _is_valid_date,
    "date-time": _is_valid_datetime,
    "email": lambda value: bool(_EMAIL_RE.match(value)),
    "uri": _is_valid_uri,
    "uuid": _is_valid_uuid,
}


def _coerce(parameter: Parameter, value: Any, problems: list[str]) -> Any:
    """Check ``value`` against the declared type; returns the normalized value."""
    name = parameter.name
    ptype = parameter.type
    if ptype is ParameterType.STRING and isinstance(value, str):
        return value
    if ptype is ParameterType.BOOLEAN and isinstance(value, bool):
        return value
    if ptype is ParameterType.INTEGER and not isinstance(value, bool):
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
    if ptype is ParameterType.NUMBER and isinstance(value, (int, float)) and not isinstance(
        value, bool
    ):
        return value
    if ptype is ParameterType.ARRAY and isinstance(value, (list, tuple)):
        items = list(value)
        if parameter.items is not None:
            element = Parameter(name=f"{name}[]", type=parameter.items)
            for index, item in enumerate(items):
                item_problems: list[str] = []
                items[index] = _coerce(element, item, item_problems)
                problems.extend(
                    problem.replace(f"'{name}[]'", f"'{name}[{index}]'") for problem in item_problems
                )
        return items
    if ptype is ParameterType.OBJECT and isinstance(value, dict):
        return value
    problems.append(f"parameter '{name}' expects {ptype.value}, got {type(value).__name__}")
    return value


def _check_constraints(parameter: Parameter, value: Any, problems: list[str]) -> None:
    name = parameter.name
    if parameter.enum is not None and value not in parameter.enum:
        allowed = ", ".join(repr(option) for option in parameter.enum)
        problems.append(f"parameter '{name}' must be one of {allowed}")
    if parameter.type.is_numeric():
        if parameter.minimum is not None and value < parameter.minimum:
            problems.append(f"parameter '{name}' must be >= {parameter.minimum}")
        if parameter.maximum is not None and value > parameter.maximum:
            problems.append(f"parameter '{name}' must be <= {parameter.maximum}")
    if parameter.type is ParameterType.STRING:
        if parameter.pattern is not None and re.search(parameter.pattern, value) is None:
            problems.append(f"parameter '{name}' does not match pattern {parameter.pattern!r}")
        checker = FORMAT_CHECKERS.get(parameter.format or "")
        if checker is not None:
            try:
                valid = checker(value)
            except ValueError:
                valid = False
            if not valid:
                problems.append(f"parameter '{name}' is not a valid {parameter.format}")


def validate_arguments(
    capability: Capability, arguments: dict[str, Any] | None
) -> dict[str, TypedValue]:
    """Validate caller arguments against the capability's parameters.

    Unknown parameters are rejected, defaults are applied to omitted
    optional parameters, and every problem is reported at once.

    Raises:
        ParameterError: Listing every problem found

    Example:
        >>> typed = validate_arguments(search, {"q": "wireless headphones", "price_max": 100})
        >>> typed["price_max"]
        TypedValue(type=<ParameterType.NUMBER: 'number'>, value=100)
    """
    arguments = dict(arguments or {})
    problems: list[str] = []
    declared = {parameter.name: parameter for parameter in capability.parameters}

    for name in arguments:
        if name not in declared:
            problems.append(f"unknown parameter '{name}'")

    typed: dict[str, TypedValue] = {}
    for parameter in capability.parameters:
        value = arguments.get(parameter.name)
        if value is None:
            if parameter.default is not None:
                typed[parameter.name] = TypedValue(parameter.type, parameter.default)
            elif parameter.required:
                problems.append(f"missing required parameter '{parameter.name}'")
            continue
        before = len(problems)
        value = _coerce(parameter, value, problems)
        if len(problems) == before:
            _check_constraints(parameter, value, problems)
        typed[parameter.name] = TypedValue(parameter.type, value)

    if problems:
        raise ParameterError(capability_id=capability.id, problems=problems)
    return typed


@dataclass
class RoutedArguments:
    """Validated arguments split by where they travel."""

    path: dict[str, str] = field(default_factory=dict)
    query: list[tuple[str, str]] = field(default_factory=list)
    body: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


def route_arguments(capability: Capability, typed: dict[str, TypedValue]) -> RoutedArguments:
    """Place each argument in the path, query, body or headers.

    Path placeholders take their parameter; remaining arguments go to the
    query string for GET/DELETE and to a JSON body otherwise. A parameter's
    explicit ``in`` overrides the default.
    """
    placeholders = set(PLACEHOLDER_RE.findall(capability.endpoint))
    routed = RoutedArguments()
    for parameter in capability.parameters:
        value = typed.get(parameter.name)
        if value is None:
            continue
        location = parameter.location
        if location is None:
            if parameter.name in placeholders:
                location = ParameterLocation.PATH
            elif capability.method.carries_body():
                location = ParameterLocation.BODY
            else:
                location = ParameterLocation.QUERY
        if location is ParameterLocation.PATH:
            routed.path[parameter.name] = value.to_text()
        elif location is ParameterLocation.QUERY:
            routed.query.extend((parameter.name, text) for text in value.to_query())
        elif location is ParameterLocation.HEADER:
            routed.headers[parameter.name] = value.to_text()
        else:
            routed.body[parameter.name] = value.to_json()
    return routed


def build_url(origin: str, endpoint: str, path_values: dict[str, str]) -> str:
    """Resolve the endpoint against the host origin and fill path placeholders."""

    def substitute(match: re.Match[str]) -> str:
        return quote(path_values.get(match.group(1), ""), safe="")

    filled = PLACEHOLDER_RE.sub(substitute, endpoint)
    return urljoin(f"{origin.rstrip('/')}/", filled)
