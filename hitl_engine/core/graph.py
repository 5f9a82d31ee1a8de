"""Graph model: loading, validation and lookups over workflow definitions."""

from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError

from ..models.core import (
    EdgeDefinition,
    NodeDefinition,
    ValidationResult,
    WorkflowDefinition,
)
from .exceptions import DefinitionError
from .logging import get_logger

logger = get_logger(__name__)


def start_nodes(definition: WorkflowDefinition) -> List[NodeDefinition]:
    """Return every node with no incoming edge, in declaration order."""
    targets = {edge.target for edge in definition.edges}
    return [node for node in definition.nodes if node.id not in targets]


def outgoing(definition: WorkflowDefinition, node_id: str) -> List[EdgeDefinition]:
    """Return the edges leaving ``node_id``, in declaration order."""
    return [edge for edge in definition.edges if edge.source == node_id]


def _adjacency(definition: WorkflowDefinition, reverse: bool = False) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = {node.id: [] for node in definition.nodes}
    for edge in definition.edges:
        source, target = (edge.target, edge.source) if reverse else (edge.source, edge.target)
        adjacency.setdefault(source, []).append(target)
    return adjacency


def _reachable_from(adjacency: Dict[str, List[str]], start: str) -> Set[str]:
    """Nodes reachable from ``start`` by following one or more edges, plus ``start``."""
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for neighbor in adjacency.get(current, []):
            if neighbor not in seen:
                seen.add(neighbor)
                queue.append(neighbor)
    return seen


def find_back_edges(definition: WorkflowDefinition) -> List[EdgeDefinition]:
    """
    Return the edges that close a loop, in declaration order.

    Depth-first search from the start nodes, following outgoing edges in
    declaration order the way traversal does. An edge into a node that is
    still on the recursion stack is a back edge (self-loops included). Edges
    that join two branches inside a loop are not.
    """
    outgoing_edges: Dict[str, List[EdgeDefinition]] = {node.id: [] for node in definition.nodes}
    for edge in definition.edges:
        outgoing_edges.setdefault(edge.source, []).append(edge)

    visited: Set[str] = set()
    rec_stack: Set[str] = set()
    back_edge_ids: Set[int] = set()

    def visit(node_id: str):
        visited.add(node_id)
        rec_stack.add(node_id)
        for edge in outgoing_edges.get(node_id, []):
            if edge.target in rec_stack:
                back_edge_ids.add(id(edge))
            elif edge.target not in visited:
                visit(edge.target)
        rec_stack.discard(node_id)

    # Nodes only reachable from a loop with no entry still get classified
    roots = [node.id for node in start_nodes(definition)] + [node.id for node in definition.nodes]
    for node_id in roots:
        if node_id not in visited:
            visit(node_id)

    return [edge for edge in definition.edges if id(edge) in back_edge_ids]


def loop_bodies(definition: WorkflowDefinition) -> Dict[str, Set[str]]:
    """
    Map each loop header to the nodes of the loops it heads.

    A back edge ``u -> h`` makes ``h`` a header; its body is every node on a
    path from ``h`` to ``u``. Several back edges into one header share a body.
    """
    forward = _adjacency(definition)
    backward = _adjacency(definition, reverse=True)
    bodies: Dict[str, Set[str]] = {}
    for edge in find_back_edges(definition):
        body = _reachable_from(forward, edge.target) & _reachable_from(backward, edge.source)
        bodies.setdefault(edge.target, set()).update(body)
    return bodies


def validate_definition(
    definition: WorkflowDefinition,
    known_node_types: Optional[Iterable[str]] = None
) -> ValidationResult:
    """
    Validate a workflow definition for structural correctness.

    Errors make the definition unusable: duplicate node ids, edges that
    reference missing nodes, and graphs without a start node. Warnings flag
    shapes that run but are often mistakes.

    Args:
        definition: The workflow definition to validate
        known_node_types: Node types with a registered executor; unknown
            types are reported as warnings when given

    Returns:
        ValidationResult: Validation results with errors and warnings
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not definition.nodes:
        errors.append("Workflow must contain at least one node")
        return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

    seen_ids: Set[str] = set()
    for node in definition.nodes:
        if node.id in seen_ids:
            errors.append(f"Duplicate node ID: '{node.id}'")
        seen_ids.add(node.id)

    for edge in definition.edges:
        if edge.source not in seen_ids:
            errors.append(f"Edge references non-existent source node: '{edge.source}'")
        if edge.target not in seen_ids:
            errors.append(f"Edge references non-existent target node: '{edge.target}'")

    if not start_nodes(definition):
        errors.append("Workflow has no start node; every node has an incoming edge")

    if errors:
        return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

    if find_back_edges(definition):
        warnings.append(
            "Workflow contains cycles. Ensure loop conditions are configured "
            "to prevent unbounded revisits."
        )

    if known_node_types is not None:
        known = set(known_node_types)
        for node in definition.nodes:
            if node.type not in known:
                warnings.append(f"Node '{node.id}' has unknown type '{node.type}'")

    connected = {edge.source for edge in definition.edges} | {edge.target for edge in definition.edges}
    if len(definition.nodes) > 1:
        for node in definition.nodes:
            if node.id not in connected:
                warnings.append(f"Node '{node.id}' is isolated")

    for node in definition.nodes:
        if node.is_human_review and not node.config.get("instructions"):
            warnings.append(f"Human review node '{node.id}' has no instructions")

    return ValidationResult(is_valid=True, errors=errors, warnings=warnings)


def load_definition(
    raw: Union[WorkflowDefinition, Dict[str, Any]],
    known_node_types: Optional[Iterable[str]] = None
) -> WorkflowDefinition:
    """
    Parse and validate a workflow definition once, at load time.

    Args:
        raw: A WorkflowDefinition or its mapping form
        known_node_types: Node types with a registered executor

    Returns:
        WorkflowDefinition: The validated definition

    Raises:
        DefinitionError: If the definition cannot be parsed or is invalid
    """
    if isinstance(raw, WorkflowDefinition):
        definition = raw
    else:
        try:
            definition = WorkflowDefinition.model_validate(raw)
        except ValidationError as e:
            messages = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise DefinitionError(
                f"Workflow definition is malformed: {'; '.join(messages)}",
                validation_errors=messages,
                workflow_name=raw.get("name") if isinstance(raw, dict) else None
            ) from e

    result = validate_definition(definition, known_node_types)
    if not result.is_valid:
        error_msg = f"Workflow validation failed: {'; '.join(result.errors)}"
        logger.error(error_msg)
        raise DefinitionError(error_msg, validation_errors=result.errors, workflow_name=definition.name)

    if result.warnings:
        logger.warning(f"Workflow validation warnings for '{definition.name}': {'; '.join(result.warnings)}")

    return definition


class WorkflowGraph:
    """A validated definition with precomputed indices."""

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self._nodes: Dict[str, NodeDefinition] = {node.id: node for node in definition.nodes}
        self._outgoing: Dict[str, List[EdgeDefinition]] = {node.id: [] for node in definition.nodes}
        for edge in definition.edges:
            self._outgoing[edge.source].append(edge)
        self._back_edges = {id(edge) for edge in find_back_edges(definition)}
        self._loop_bodies = loop_bodies(definition)
        self._start_nodes = start_nodes(definition)

    @property
    def start_nodes(self) -> List[NodeDefinition]:
        return list(self._start_nodes)

    def node(self, node_id: str) -> NodeDefinition:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise DefinitionError(
                f"Node '{node_id}' is not part of workflow '{self.definition.name}'",
                workflow_name=self.definition.name
            )

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def outgoing(self, node_id: str) -> List[EdgeDefinition]:
        return list(self._outgoing.get(node_id, []))

    def is_back_edge(self, edge: EdgeDefinition) -> bool:
        return id(edge) in self._back_edges

    def loop_body(self, header_id: str) -> Set[str]:
        """Nodes to run again when a back edge re-enters ``header_id``; always includes the header."""
        return set(self._loop_bodies.get(header_id, ())) | {header_id}
