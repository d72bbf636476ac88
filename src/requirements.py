"""
Requirement expressions: what a caller must hold before calling a tool.

A server attaches an ordered list of requirement expressions to each tool it
lists. The list is implicitly conjoined (every entry must hold) and an empty
list means the tool can run for any caller.

Each expression is one of a closed set of variants:

    Leaves
        Capability(name)                    caller advertises the capability
        ScopePermission(value)              caller holds the OAuth scope
        ClaimPermission(name, value)        caller identity carries claim == value
        ResourcePermission(uri, value)      caller holds `value` on the resource
        InputPermission(value, property)    constraint on an invocation argument
        NestedTooDeep(limit)                listed past the depth ceiling, never holds

    Composites
        AnyOf(children)                     at least one child holds
        AllOf(children)                     every child holds
        Not(child)                          the child does not hold

Wire format (JSON), as it appears in a tools/list result:

    {"type": "capability", "name": "mcp:sampling"}
    {"type": "permission", "subType": "scope", "value": "admin:users:delete"}
    {"type": "permission", "subType": "claim", "name": "role", "value": "admin"}
    {"type": "permission", "subType": "resource", "uri": "repo://x", "value": "write"}
    {"type": "permission", "subType": "input", "property": "imageRepo", "value": "write"}
    {"anyOf": [...]}   {"allOf": [...]}   {"not": {...}}

Nesting is unbounded by design. Parsing and serialization walk the tree with
an explicit work stack, and parsing enforces the configured depth ceiling.
A client that lists a tool nested past the ceiling keeps the tool, with a
NestedTooDeep entry in place of the offending expression (see
parse_requirements), so the tool is vetoed rather than the listing lost.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Union

from src.config import settings
from src.errors import RequirementSchemaError, TooDeepRequirement


# ---------------------------------------------------------------------------
# Leaves
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Capability:
    """The caller must advertise this named capability (e.g. "mcp:sampling")."""

    name: str

    def __str__(self) -> str:
        return f"capability '{self.name}'"


class Permission:
    """Marker base for the permission leaf variants."""


@dataclass(frozen=True)
class ScopePermission(Permission):
    value: str

    def __str__(self) -> str:
        return f"scope '{self.value}'"


@dataclass(frozen=True)
class ClaimPermission(Permission):
    name: str
    value: str

    def __str__(self) -> str:
        return f"claim {self.name}='{self.value}'"


@dataclass(frozen=True)
class ResourcePermission(Permission):
    uri: str
    value: str

    def __str__(self) -> str:
        return f"'{self.value}' on resource {self.uri}"


@dataclass(frozen=True)
class InputPermission(Permission):
    """
    Constraint keyed to an invocation argument.

    With `property` set, the argument of that name must equal `value`.
    Without it the constraint applies to the call as a whole: some argument
    value must equal `value` (see src/evaluator.py).
    """

    value: str
    property: str | None = None

    def __str__(self) -> str:
        if self.property is None:
            return f"input '{self.value}'"
        return f"input {self.property}='{self.value}'"


# ---------------------------------------------------------------------------
# Composites
# ---------------------------------------------------------------------------


def _freeze_children(node: Any, children: Iterable) -> None:
    frozen = tuple(children)
    if not frozen:
        raise RequirementSchemaError(f"{type(node).__name__} requires at least one child")
    # Frozen dataclass: assignment has to bypass __setattr__
    object.__setattr__(node, "children", frozen)


@dataclass(frozen=True)
class AnyOf:
    children: tuple

    def __post_init__(self) -> None:
        _freeze_children(self, self.children)

    def __str__(self) -> str:
        return "any of (" + " | ".join(str(c) for c in self.children) + ")"


@dataclass(frozen=True)
class AllOf:
    children: tuple

    def __post_init__(self) -> None:
        _freeze_children(self, self.children)

    def __str__(self) -> str:
        return "all of (" + ", ".join(str(c) for c in self.children) + ")"


@dataclass(frozen=True)
class Not:
    child: Any

    def __str__(self) -> str:
        return f"not ({self.child})"


@dataclass(frozen=True)
class NestedTooDeep:
    """
    Stands in for a listed requirement that nests past the depth ceiling.

    Never holds, so a tool carrying one is always vetoed.
    """

    limit: int

    def __str__(self) -> str:
        return f"requirement nested deeper than {self.limit} levels"


RequirementExpr = Union[
    Capability,
    ScopePermission,
    ClaimPermission,
    ResourcePermission,
    InputPermission,
    AnyOf,
    AllOf,
    Not,
    NestedTooDeep,
]

LEAF_TYPES = (Capability, Permission, NestedTooDeep)


def is_leaf(expr: RequirementExpr) -> bool:
    return isinstance(expr, LEAF_TYPES)


def describe(expr: RequirementExpr) -> str:
    """One-line human-readable rendering used in diagnostics and logs."""
    return str(expr)


# ---------------------------------------------------------------------------
# Wire parsing
# ---------------------------------------------------------------------------


def _require_str(data: dict, key: str, *, optional: bool = False) -> str | None:
    value = data.get(key)
    if value is None and optional:
        return None
    if not isinstance(value, str):
        raise RequirementSchemaError(
            f"Requirement field '{key}' must be a string (got {type(value).__name__})"
        )
    return value


def _parse_permission(data: dict) -> RequirementExpr:
    sub_type = data.get("subType")
    if sub_type == "scope":
        return ScopePermission(value=_require_str(data, "value"))
    if sub_type == "claim":
        return ClaimPermission(name=_require_str(data, "name"), value=_require_str(data, "value"))
    if sub_type == "resource":
        return ResourcePermission(uri=_require_str(data, "uri"), value=_require_str(data, "value"))
    if sub_type == "input":
        return InputPermission(
            value=_require_str(data, "value"),
            property=_require_str(data, "property", optional=True),
        )
    raise RequirementSchemaError(f"Unknown permission subType: {sub_type!r}")


# Work stack actions for parse_requirement / to_wire
_VISIT = 0
_BUILD = 1

_COMPOSITE_KEYS = (("anyOf", AnyOf), ("allOf", AllOf))


def _parse_leaf(data: dict) -> RequirementExpr:
    kind = data.get("type")
    if kind == "capability":
        return Capability(name=_require_str(data, "name"))
    if kind == "permission":
        return _parse_permission(data)
    raise RequirementSchemaError(f"Unknown requirement type: {kind!r}")


def parse_requirement(data: Any, *, max_depth: int | None = None) -> RequirementExpr:
    """
    Validate one wire-format requirement and build its expression tree.

    Args:
        data: Decoded JSON value for a single requirement
        max_depth: Nesting ceiling, defaults to settings.max_requirement_depth

    Raises:
        RequirementSchemaError: The value does not have a requirement shape
        TooDeepRequirement: Nesting exceeds the ceiling
    """
    limit = settings.max_requirement_depth if max_depth is None else max_depth

    # Post-order, same shape as evaluator.evaluate(): a composite is built once
    # all of its children sit on `built`, in order.
    work: list[tuple[int, Any, int]] = [(_VISIT, data, 1)]
    built: list[RequirementExpr] = []

    while work:
        action, node, depth = work.pop()

        if action == _BUILD:
            cls, count = node
            children = built[-count:]
            del built[-count:]
            built.append(Not(child=children[0]) if cls is Not else cls(children=children))
            continue

        if depth > limit:
            raise TooDeepRequirement(depth=depth, limit=limit)
        if not isinstance(node, dict):
            raise RequirementSchemaError(
                f"Requirement must be an object (got {type(node).__name__})"
            )

        children = None
        for key, cls in _COMPOSITE_KEYS:
            if key in node:
                children = node[key]
                if not isinstance(children, list):
                    raise RequirementSchemaError(f"'{key}' must be a list")
                if not children:
                    raise RequirementSchemaError(f"{cls.__name__} requires at least one child")
                break
        else:
            if "not" in node:
                cls, children = Not, [node["not"]]

        if children is None:
            built.append(_parse_leaf(node))
            continue

        work.append((_BUILD, (cls, len(children)), depth))
        for child in reversed(children):
            work.append((_VISIT, child, depth + 1))

    return built[0]


def parse_requirements(
    items: Any, *, max_depth: int | None = None, fail_closed: bool = False
) -> tuple:
    """
    Parse a tool's `requires` list. None (field absent) is an empty list.

    With fail_closed, an entry nested past the ceiling becomes a NestedTooDeep
    marker instead of raising, so the rest of the list still parses.
    """
    if items is None:
        return ()
    if not isinstance(items, list):
        raise RequirementSchemaError("'requires' must be a list of requirements")
    parsed = []
    for item in items:
        try:
            parsed.append(parse_requirement(item, max_depth=max_depth))
        except TooDeepRequirement as e:
            if not fail_closed:
                raise
            parsed.append(NestedTooDeep(limit=e.limit))
    return tuple(parsed)


def _leaf_to_wire(expr: RequirementExpr) -> dict[str, Any]:
    if isinstance(expr, Capability):
        return {"type": "capability", "name": expr.name}
    if isinstance(expr, ScopePermission):
        return {"type": "permission", "subType": "scope", "value": expr.value}
    if isinstance(expr, ClaimPermission):
        return {"type": "permission", "subType": "claim", "name": expr.name, "value": expr.value}
    if isinstance(expr, ResourcePermission):
        return {"type": "permission", "subType": "resource", "uri": expr.uri, "value": expr.value}
    if isinstance(expr, InputPermission):
        wire = {"type": "permission", "subType": "input", "value": expr.value}
        if expr.property is not None:
            wire["property"] = expr.property
        return wire
    if isinstance(expr, NestedTooDeep):
        raise TypeError("A requirement that was too deep to parse has no wire form")
    raise TypeError(f"Not a requirement expression: {expr!r}")


def to_wire(expr: RequirementExpr) -> dict[str, Any]:
    """Serialize an expression back to its JSON wire form."""
    work: list[tuple[int, RequirementExpr]] = [(_VISIT, expr)]
    built: list[dict[str, Any]] = []

    while work:
        action, node = work.pop()

        if action == _BUILD:
            if isinstance(node, Not):
                built.append({"not": built.pop()})
                continue
            count = len(node.children)
            children = built[-count:]
            del built[-count:]
            built.append({"anyOf" if isinstance(node, AnyOf) else "allOf": children})
            continue

        if isinstance(node, (AnyOf, AllOf)):
            work.append((_BUILD, node))
            for child in reversed(node.children):
                work.append((_VISIT, child))
        elif isinstance(node, Not):
            work.append((_BUILD, node))
            work.append((_VISIT, node.child))
        else:
            built.append(_leaf_to_wire(node))

    return built[0]
