"""
Decide whether a caller's context satisfies a tool's requirements.

evaluate() walks a requirement tree with an explicit work stack instead of
Python recursion, so the only depth limit is the configured ceiling
(settings.max_requirement_depth). Past the ceiling it raises
TooDeepRequirement; check_requirements() turns that into an unsatisfied
verdict (fail closed).

Verdict and diagnostics:

    Leaf       satisfied per its predicate, unmet = (leaf,) otherwise
    AllOf      satisfied iff every child is; unmet = every child's unmet leaves
    AnyOf      satisfied iff some child is; unmet = every child's unmet leaves
               when none is satisfied, () otherwise
    Not        satisfied iff the child is not; when unsatisfied the Not node
               itself is reported as one unit (child leaves are not inverted)

The boolean verdict does not depend on child order. Only the order of the
unmet list follows the tree (left to right).
"""

import logging
from dataclasses import dataclass
from typing import Iterable

from src.config import settings
from src.context import CallerContext
from src.errors import TooDeepRequirement
from src.requirements import (
    AllOf,
    AnyOf,
    Capability,
    ClaimPermission,
    InputPermission,
    NestedTooDeep,
    Not,
    RequirementExpr,
    ResourcePermission,
    ScopePermission,
)

logger = logging.getLogger("mcp-client")


@dataclass(frozen=True)
class Evaluation:
    """
    Result of checking requirements against a context.

    Attributes:
        satisfied: Whether the caller may invoke
        unmet: Unsatisfied units in tree order (leaves, or Not nodes)
    """

    satisfied: bool
    unmet: tuple = ()

    def __bool__(self) -> bool:
        return self.satisfied


_SATISFIED = Evaluation(satisfied=True)

# Work stack actions
_VISIT = 0
_COMBINE = 1


def _input_matches(expr: InputPermission, ctx: CallerContext) -> bool:
    if expr.property is not None:
        return expr.property in ctx.inputs and ctx.inputs[expr.property] == expr.value
    # No property named: the constraint holds if any argument carries the value.
    return any(value == expr.value for value in ctx.inputs.values())


def _leaf_holds(expr: RequirementExpr, ctx: CallerContext) -> bool:
    if isinstance(expr, Capability):
        return expr.name in ctx.capabilities
    if isinstance(expr, ScopePermission):
        return expr.value in ctx.scopes
    if isinstance(expr, ClaimPermission):
        return expr.name in ctx.claims and ctx.claims[expr.name] == expr.value
    if isinstance(expr, ResourcePermission):
        return expr.value in ctx.resource_permissions.get(expr.uri, frozenset())
    if isinstance(expr, InputPermission):
        return _input_matches(expr, ctx)
    if isinstance(expr, NestedTooDeep):
        return False
    raise TypeError(f"Not a requirement expression: {expr!r}")


def _combine(expr: RequirementExpr, results: list[Evaluation]) -> Evaluation:
    if isinstance(expr, Not):
        if results[0].satisfied:
            return Evaluation(satisfied=False, unmet=(expr,))
        return _SATISFIED
    if isinstance(expr, AnyOf) and any(r.satisfied for r in results):
        return _SATISFIED
    if isinstance(expr, AllOf) and all(r.satisfied for r in results):
        return _SATISFIED
    unmet = tuple(leaf for r in results for leaf in r.unmet)
    return Evaluation(satisfied=False, unmet=unmet)


def _children(expr: RequirementExpr) -> tuple | None:
    if isinstance(expr, (AnyOf, AllOf)):
        return expr.children
    if isinstance(expr, Not):
        return (expr.child,)
    return None


def evaluate(
    expr: RequirementExpr, ctx: CallerContext, *, max_depth: int | None = None
) -> Evaluation:
    """
    Evaluate one requirement tree against a context.

    Pure: the context is only read. Total for every well-formed tree within
    the depth ceiling.

    Raises:
        TooDeepRequirement: The tree nests deeper than max_depth
    """
    limit = settings.max_requirement_depth if max_depth is None else max_depth

    # Post-order walk: children are pushed right-to-left so they are visited
    # left-to-right, and their results land on `values` in tree order.
    work: list[tuple[int, RequirementExpr, int]] = [(_VISIT, expr, 1)]
    values: list[Evaluation] = []

    while work:
        action, node, depth = work.pop()

        if action == _COMBINE:
            count = len(_children(node))
            results = values[-count:]
            del values[-count:]
            values.append(_combine(node, results))
            continue

        if depth > limit:
            raise TooDeepRequirement(depth=depth, limit=limit)

        children = _children(node)
        if children is None:
            holds = _leaf_holds(node, ctx)
            values.append(_SATISFIED if holds else Evaluation(satisfied=False, unmet=(node,)))
            continue

        work.append((_COMBINE, node, depth))
        for child in reversed(children):
            work.append((_VISIT, child, depth + 1))

    return values[0]


def evaluate_all(
    requirements: Iterable[RequirementExpr],
    ctx: CallerContext,
    *,
    max_depth: int | None = None,
) -> Evaluation:
    """
    Evaluate a tool's top-level requirement list (implicitly AllOf).

    An empty list is always satisfied.
    """
    unmet: list = []
    for expr in requirements:
        unmet.extend(evaluate(expr, ctx, max_depth=max_depth).unmet)
    if not unmet:
        return _SATISFIED
    return Evaluation(satisfied=False, unmet=tuple(unmet))


def check_requirements(
    requirements: Iterable[RequirementExpr],
    ctx: CallerContext,
    *,
    max_depth: int | None = None,
) -> Evaluation:
    """
    Like evaluate_all, but a tree past the depth ceiling is a veto, not an error.

    The offending top-level expression is reported as unmet.
    """
    unmet: list = []
    for expr in requirements:
        try:
            result = evaluate(expr, ctx, max_depth=max_depth)
        except TooDeepRequirement as e:
            logger.warning(
                "Requirement too deep, treating as unsatisfied",
                extra={"log_data": {"code": e.code, "depth": e.depth, "limit": e.limit}},
            )
            unmet.append(expr)
            continue
        unmet.extend(result.unmet)
    if not unmet:
        return _SATISFIED
    return Evaluation(satisfied=False, unmet=tuple(unmet))


def unmet_scopes(evaluation: Evaluation) -> tuple[str, ...]:
    """Scope names among the unmet leaves, deduplicated, in tree order."""
    seen: dict[str, None] = {}
    for expr in evaluation.unmet:
        if isinstance(expr, ScopePermission):
            seen.setdefault(expr.value, None)
    return tuple(seen)
