"""Edge condition evaluation."""

from typing import Iterable, List, Union

from ..models.core import (
    ConditionKind,
    EdgeCondition,
    EdgeDefinition,
    Failure,
    PendingReview,
    Success,
)
from .logging import get_logger

logger = get_logger(__name__)

Result = Union[Success, Failure, PendingReview]


def _matches_label(label: str, result: Result) -> bool:
    if not isinstance(result, Success):
        return False
    for candidate in (result.selected_action, result.decision, result.output):
        if candidate is not None:
            return candidate == label
    return False


def _matches_structured(edge: EdgeDefinition, condition: EdgeCondition, result: Result) -> bool:
    kind = condition.kind
    if kind == ConditionKind.SUCCESS.value:
        return isinstance(result, Success)
    if kind == ConditionKind.FAILURE.value:
        return isinstance(result, Failure)
    if kind == ConditionKind.OUTPUT_EQUALS.value:
        return isinstance(result, Success) and result.output == condition.value
    if kind == ConditionKind.OUTPUT_CONTAINS.value:
        return (
            isinstance(result, Success)
            and isinstance(result.output, str)
            and str(condition.value) in result.output
        )
    if kind == ConditionKind.PATH.value:
        return isinstance(result, Success) and edge.id is not None and result.next_path == edge.id

    logger.warning(f"Unknown condition kind '{kind}' on edge {edge.source}->{edge.target}; following it")
    return True


def should_follow(edge: EdgeDefinition, result: Result) -> bool:
    """
    Decide whether an edge fires for the source node's result.

    A bare label is compared with the first of ``selected_action``,
    ``decision`` and ``output`` that is set on a Success. Structured
    conditions dispatch on their kind; unknown kinds always fire.
    """
    condition = edge.condition
    if condition is None:
        return True
    if isinstance(condition, str):
        return _matches_label(condition, result)
    return _matches_structured(edge, condition, result)


def edges_that_fire(edges: Iterable[EdgeDefinition], result: Result) -> List[EdgeDefinition]:
    """Return every matching edge, in declaration order."""
    return [edge for edge in edges if should_follow(edge, result)]
