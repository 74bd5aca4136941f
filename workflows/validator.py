"""
Structural legality rules for workflow graphs.

`is_legal` gates a single proposed connection and is what an editor calls
before admitting an edge. `validate_graph` re-checks a whole graph right
before a run, because edits made after a connection was admitted (removing
an iterate task's last output edge, for example) can leave a graph that
`is_legal` would no longer accept.
"""
import logging
from typing import TYPE_CHECKING

from core.errors import (
    AmbiguousEntryTaskError, InvalidGraphError, NoEntryTaskError,
)
from workflows.models import Connection, Graph, OUTPUT_PORT

if TYPE_CHECKING:
    from tasks.registry import TaskKindRegistry

logger = logging.getLogger(__name__)


def is_legal(candidate: Connection, graph: Graph) -> bool:
    """Check a proposed connection against the graph it would join."""
    # Ports are single-writer
    if graph.incoming_connections(candidate.target, candidate.target_port):
        return False

    if candidate.source == candidate.target:
        return False

    if graph.is_loop_closing(candidate):
        return closes_iteration(candidate, graph)

    return True


def closes_iteration(candidate: Connection, graph: Graph) -> bool:
    """
    A return edge must close a loop the iterate task's output port opened:
    its source has to sit in the body reachable from some output successor.
    """
    output_conns = graph.outgoing_connections(candidate.target, OUTPUT_PORT)
    if not output_conns:
        return False

    body = graph.reachable_from(
        (c.target for c in output_conns),
        follow=graph.is_ordinary,
    )
    return candidate.source in body


def find_entry_task(graph: Graph) -> str:
    """Locate the unique task with no inbound connection."""
    candidates = graph.entry_candidates()
    if not candidates:
        raise NoEntryTaskError()
    if len(candidates) > 1:
        raise AmbiguousEntryTaskError(candidates)
    return candidates[0]


def validate_graph(graph: Graph, registry: "TaskKindRegistry | None" = None) -> list[str]:
    """Validate a whole graph. Returns list of problems."""
    if registry is None:
        from tasks.registry import TaskKindRegistry
        registry = TaskKindRegistry.instance()

    problems: list[str] = []

    for task in graph.tasks:
        if task.kind not in registry:
            problems.append(f"Task '{task.id}' has unknown kind '{task.kind}'")

    for conn in graph.connections:
        source = graph.get_task(conn.source)
        target = graph.get_task(conn.target)
        if source is None:
            problems.append(f"Connection {conn}: source '{conn.source}' not found")
        if target is None:
            problems.append(f"Connection {conn}: target '{conn.target}' not found")
        if source is None or target is None:
            continue

        if conn.source == conn.target:
            problems.append(f"Connection {conn} is a self-loop")
            continue

        source_kind = registry.get(source.kind)
        if source_kind and conn.source_port not in source_kind.output_ports:
            problems.append(f"Connection {conn}: {source.kind} has no output port {conn.source_port!r}")
        target_kind = registry.get(target.kind)
        if target_kind and conn.target_port not in target_kind.input_ports:
            problems.append(f"Connection {conn}: {target.kind} has no input port {conn.target_port!r}")

        if graph.is_loop_closing(conn) and not closes_iteration(conn, graph.without_connection(conn)):
            problems.append(f"Connection {conn} does not close a loop opened by '{conn.target}' output")

    # Single-writer ports
    seen: set[tuple[str, str | None]] = set()
    for conn in graph.connections:
        key = (conn.target, conn.target_port)
        if key in seen:
            continue
        seen.add(key)
        if len(graph.incoming_connections(conn.target, conn.target_port)) > 1:
            problems.append(f"Port {conn.target_port!r} of '{conn.target}' has more than one inbound connection")

    ordinary_successors = {
        task_id: [t for t in graph.ordinary_successors(task_id) if t in graph]
        for task_id in graph.tasks_by_id
    }
    if _has_cycle(ordinary_successors):
        problems.append("Graph contains a cycle outside of iteration return edges")
    else:
        problems.extend(_check_iteration_bodies(graph))

    if problems:
        logger.debug(f"Graph validation found {len(problems)} problem(s)")
    return problems


def require_valid(graph: Graph, registry: "TaskKindRegistry | None" = None) -> str:
    """Raise a configuration error unless the graph can run. Returns the entry task id."""
    problems = validate_graph(graph, registry)
    if problems:
        raise InvalidGraphError(problems)
    return find_entry_task(graph)


def _check_iteration_bodies(graph: Graph) -> list[str]:
    """
    Bodies must be disjoint, and no body may wait on its own iterate task
    finishing (directly or through the return path), or the run deadlocks.
    """
    problems: list[str] = []
    bodies = {
        task_id: graph.iteration_body(task_id)
        for task_id in graph.tasks_by_id
        if graph.is_iterate(task_id)
    }

    owner: dict[str, str] = {}
    for iterate_id, body in bodies.items():
        for task_id in sorted(body):
            if task_id in owner:
                problems.append(
                    f"Task '{task_id}' belongs to the bodies of both '{owner[task_id]}' and '{iterate_id}'"
                )
            else:
                owner[task_id] = iterate_id

    # Data dependencies, plus "iterate waits for every body task"
    waits_on: dict[str, list[str]] = {task_id: [] for task_id in graph.tasks_by_id}
    for conn in graph.connections:
        if conn.source not in graph or conn.target not in graph:
            continue
        if graph.is_loop_closing(conn) or graph.is_fan_out(conn):
            continue
        waits_on[conn.source].append(conn.target)
    for iterate_id, body in bodies.items():
        for task_id in body:
            waits_on[task_id].append(iterate_id)

    if _has_cycle(waits_on):
        problems.append("An iteration body depends on its own iterate task's return path")
    return problems


def _has_cycle(successors: dict[str, list[str]]) -> bool:
    """Check an adjacency map for cycles."""
    visited = set()
    rec_stack = set()

    def dfs(node_id: str) -> bool:
        visited.add(node_id)
        rec_stack.add(node_id)

        for succ in successors.get(node_id, ()):
            if succ not in visited:
                if dfs(succ):
                    return True
            elif succ in rec_stack:
                return True

        rec_stack.remove(node_id)
        return False

    for node_id in successors:
        if node_id not in visited:
            if dfs(node_id):
                return True

    return False
