"""Cycle and edge validity checks for a schedule graph.

Whole-graph validation is a three-colour depth-first search: reaching a
task that is still on the current path (gray) means a back edge, and the
path slice from that task is the cycle. Single-edge validation asks
whether the proposed predecessor is already reachable from the proposed
successor.
"""
from typing import Dict, List, Optional

from .errors import CycleError, DuplicateDependencyError, InvalidEdgeError, TaskNotFoundError
from .logs import get_logger
from .models import Dependency

log = get_logger("validity")

WHITE, GRAY, BLACK = 0, 1, 2


def _successor_ids(graph, task_id: str) -> List[str]:
    return [edge.task_id for edge in graph.successors_of(task_id)]


def find_cycle(graph) -> Optional[List[str]]:
    """Return a cycle as ``[a, b, ..., a]``, or None when the graph is a DAG."""
    task_ids = [task.id for task in graph.tasks]
    color: Dict[str, int] = {task_id: WHITE for task_id in task_ids}

    for root in task_ids:
        if color[root] != WHITE:
            continue
        color[root] = GRAY
        path = [root]
        stack = [iter(_successor_ids(graph, root))]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if color[child] == GRAY:
                return path[path.index(child):] + [child]
            if color[child] == WHITE:
                color[child] = GRAY
                path.append(child)
                stack.append(iter(_successor_ids(graph, child)))
    return None


def validate_graph(graph):
    """Raise CycleError if the graph contains a cycle."""
    cycle = find_cycle(graph)
    if cycle:
        log.warning(f"Schedule {graph.schedule_id} has a dependency cycle: {' -> '.join(cycle)}")
        raise CycleError(cycle)


def find_path(graph, source: str, target: str) -> Optional[List[str]]:
    """Depth-first search along successor edges from source to target."""
    parents: Dict[str, Optional[str]] = {source: None}
    stack = [source]
    while stack:
        current = stack.pop()
        if current == target:
            path = []
            while current is not None:
                path.append(current)
                current = parents[current]
            return list(reversed(path))
        for succ_id in _successor_ids(graph, current):
            if succ_id not in parents:
                parents[succ_id] = current
                stack.append(succ_id)
    return None


def check_dependency(graph, dep: Dependency):
    """Reject a proposed dependency before it is inserted.

    Raises InvalidEdgeError (self-loop, foreign schedule),
    DuplicateDependencyError, TaskNotFoundError or CycleError.
    """
    if dep.task_id == dep.depends_on_task_id:
        raise InvalidEdgeError("A task cannot depend on itself")
    if dep.schedule_id != graph.schedule_id:
        raise InvalidEdgeError(
            f"Dependency belongs to schedule {dep.schedule_id}, not {graph.schedule_id}"
        )
    for task_id in (dep.task_id, dep.depends_on_task_id):
        if task_id not in graph:
            raise TaskNotFoundError(task_id)
    if graph.has_edge(dep.depends_on_task_id, dep.task_id):
        raise DuplicateDependencyError("This dependency already exists")

    # A path successor -> ... -> predecessor closes a loop once pred -> succ is added
    path = find_path(graph, dep.task_id, dep.depends_on_task_id)
    if path:
        raise CycleError(
            path + [dep.task_id],
            "Adding this dependency would create a circular reference: "
            + " -> ".join(path + [dep.task_id]),
        )


def is_valid_dependency(graph, dep: Dependency) -> bool:
    try:
        check_dependency(graph, dep)
    except (InvalidEdgeError, TaskNotFoundError, CycleError):
        return False
    return True
