"""Step executors and the registry that maps node types to them."""

import inspect
import json
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

from ..models.core import (
    DEFAULT_REVIEW_ACTIONS,
    HUMAN_REVIEW_NODE_TYPES,
    Failure,
    NodeDefinition,
    PendingReview,
    Success,
    TaskAction,
)
from .exceptions import ConfigurationError
from .logging import get_logger

logger = get_logger(__name__)

NodeResultType = Union[Success, Failure, PendingReview]

_TEMPLATE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_MISSING = object()


def _lookup(context: Dict[str, Any], expression: str) -> Any:
    """Resolve a variable by exact key first, then by dotted path."""
    if expression in context:
        return context[expression]
    value: Any = context
    for key in expression.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return _MISSING
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, default=str)
    return str(value)


def render_template(template: Any, context: Dict[str, Any]) -> Any:
    """
    Substitute ``{{var}}`` placeholders using the run context.

    Strings, lists and dicts are processed recursively. ``{{a || b || 'x'}}``
    takes the first non-empty variable or quoted literal. An unresolved
    simple placeholder is left untouched.

    Args:
        template: Template value to render
        context: Variables available to the template

    Returns:
        The rendered value, with the same shape as ``template``
    """
    if isinstance(template, str):
        def replace(match: "re.Match") -> str:
            expression = match.group(1).strip()

            if "||" in expression:
                for part in (p.strip() for p in expression.split("||")):
                    if len(part) >= 2 and part[0] == part[-1] and part[0] in ("'", '"'):
                        return part[1:-1]
                    value = _lookup(context, part)
                    if value is not _MISSING and value is not None and value != "":
                        return _stringify(value)
                return ""

            value = _lookup(context, expression)
            if value is _MISSING:
                return match.group(0)
            return _stringify(value)

        return _TEMPLATE_PATTERN.sub(replace, template)

    if isinstance(template, list):
        return [render_template(item, context) for item in template]

    if isinstance(template, dict):
        return {key: render_template(value, context) for key, value in template.items()}

    return template


def parse_actions(raw_actions: Optional[List[Any]]) -> List[TaskAction]:
    """Normalize configured actions; strings become ``{id, label}`` pairs."""
    if not raw_actions:
        return [action.model_copy() for action in DEFAULT_REVIEW_ACTIONS]

    actions = []
    for raw in raw_actions:
        if isinstance(raw, TaskAction):
            actions.append(raw)
        elif isinstance(raw, str):
            actions.append(TaskAction(id=raw, label=raw.replace("_", " ").title()))
        else:
            actions.append(TaskAction(
                id=raw["id"],
                label=raw.get("label") or raw["id"],
                loop_back_node_id=raw.get("loop_back_node_id") or raw.get("loopBackNodeId"),
            ))
    return actions


class StepExecutor(ABC):
    """Runs the work for one node type.

    Returning a Failure is a reported failure that ``failure`` edges can route.
    Raising is an executor error and goes through the node's retry policy.
    """

    @abstractmethod
    async def execute(self, node: NodeDefinition, context: Dict[str, Any]) -> NodeResultType:
        ...


class FunctionExecutor(StepExecutor):
    """Adapts a plain or async callable into a step executor.

    The callable receives ``(context)`` or ``(context, config)``. A returned
    NodeResult is used as-is; any other value becomes ``Success(output=value)``.
    """

    def __init__(self, function: Callable[..., Any], name: Optional[str] = None):
        if not callable(function):
            raise ConfigurationError(f"Executor '{name or function}' must be callable")
        self.function = function
        self.name = name or getattr(function, "__name__", "function")
        try:
            params = inspect.signature(function).parameters
            self._wants_config = len(params) >= 2
        except (ValueError, TypeError):
            self._wants_config = False

    async def execute(self, node: NodeDefinition, context: Dict[str, Any]) -> NodeResultType:
        if self._wants_config:
            value = self.function(dict(context), dict(node.config))
        else:
            value = self.function(dict(context))
        if inspect.isawaitable(value):
            value = await value
        if isinstance(value, (Success, Failure, PendingReview)):
            return value
        return Success(output=value)


class PassthroughExecutor(StepExecutor):
    """Start, end and output nodes.

    ``final_output`` (or ``output``) in the node config is rendered against
    the context and becomes the node's output.
    """

    async def execute(self, node: NodeDefinition, context: Dict[str, Any]) -> NodeResultType:
        template = node.config.get("final_output", node.config.get("finalOutput", node.config.get("output")))
        if template is None:
            return Success(output=None)
        return Success(output=render_template(template, context))


class HumanReviewExecutor(StepExecutor):
    """Requests a human decision for the node."""

    async def execute(self, node: NodeDefinition, context: Dict[str, Any]) -> NodeResultType:
        config = node.config
        title = config.get("title") or config.get("label") or f"Review: {node.id}"
        instructions = config.get("instructions") or config.get("description") or "Human review required"

        include = config.get("include")
        if include:
            payload = {key: context[key] for key in include if key in context}
        else:
            payload = dict(context)

        return PendingReview(
            title=render_template(title, context),
            instructions=render_template(instructions, context),
            actions=parse_actions(config.get("actions")),
            task_payload=payload,
        )


class ExecutorRegistry:
    """Registry of step executors keyed by node type."""

    def __init__(self, include_builtins: bool = True):
        self._executors: Dict[str, StepExecutor] = {}
        if include_builtins:
            passthrough = PassthroughExecutor()
            for node_type in ("start", "end", "output", "passthrough"):
                self._executors[node_type] = passthrough
            review = HumanReviewExecutor()
            for node_type in HUMAN_REVIEW_NODE_TYPES:
                self._executors[node_type] = review

    def register(self, node_type: str, executor: Union[StepExecutor, Callable[..., Any]],
                 replace: bool = False) -> None:
        """Register an executor or a callable for a node type.

        Args:
            node_type: Node type the executor handles
            executor: A StepExecutor, or a callable wrapped in FunctionExecutor
            replace: Allow overriding an existing registration

        Raises:
            ConfigurationError: If the type is empty or already registered
        """
        if not node_type or not node_type.strip():
            raise ConfigurationError("Executor node type cannot be empty")
        node_type = node_type.strip()

        if node_type in self._executors and not replace:
            raise ConfigurationError(f"Executor for node type '{node_type}' is already registered")

        if not isinstance(executor, StepExecutor):
            executor = FunctionExecutor(executor, name=node_type)

        self._executors[node_type] = executor
        logger.info(f"Registered executor for node type '{node_type}'")

    def unregister(self, node_type: str) -> bool:
        if self._executors.pop(node_type, None) is None:
            return False
        logger.info(f"Unregistered executor for node type '{node_type}'")
        return True

    def get(self, node_type: str) -> StepExecutor:
        """Get the executor for a node type.

        Raises:
            ConfigurationError: If no executor is registered for the type
        """
        try:
            return self._executors[node_type]
        except KeyError:
            raise ConfigurationError(f"No executor registered for node type '{node_type}'")

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def node_types(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)
