import heapq
from collections import deque
from datetime import date
from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from .errors import (
    CycleError, DependencyNotFoundError, DuplicateDependencyError, InvalidEdgeError,
    SchedulingError, TaskNotFoundError,
)
from .logs import get_logger
from .models import Dependency, DependencyType, Task, window_end
from .validity import check_dependency, find_cycle

log = get_logger("graph")


class Edge(NamedTuple):
    task_id: str  # The task on the other end of the edge
    dependency_type: DependencyType
    lag_days: int
    dependency_id: str


class ScheduleGraph:
    """In-memory tasks and dependency edges for a single schedule.

    Built fresh from plain records for every operation and discarded
    afterwards. Holds its own copies of the records, so callers never see
    a half-applied change.
    """

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        self._tasks: Dict[str, Task] = {}
        self._index: Dict[str, int] = {}
        self._dependencies: Dict[str, Dependency] = {}
        self._successors: Dict[str, Dict[str, Edge]] = {}
        self._predecessors: Dict[str, Dict[str, Edge]] = {}

    @classmethod
    def load(cls, tasks: Iterable[Task], dependencies: Iterable[Dependency],
             schedule_id: Optional[str] = None) -> 'ScheduleGraph':
        tasks = list(tasks)
        if schedule_id is None:
            if not tasks:
                raise SchedulingError("schedule_id is required to load an empty schedule")
            schedule_id = tasks[0].schedule_id

        graph = cls(schedule_id)
        for task in tasks:
            graph._add_task(task)

        for dep in dependencies:
            if dep.schedule_id != schedule_id:
                raise InvalidEdgeError(
                    f"Dependency {dep.id} belongs to schedule {dep.schedule_id}, not {schedule_id}"
                )
            if dep.task_id == dep.depends_on_task_id:
                raise InvalidEdgeError(f"Dependency {dep.id} links task {dep.task_id} to itself")
            if dep.task_id not in graph._tasks or dep.depends_on_task_id not in graph._tasks:
                # Endpoint deleted mid-batch; the edge goes with it
                log.warning(f"Dropping dependency {dep.id}: endpoint task no longer exists")
                continue
            if dep.task_id in graph._successors[dep.depends_on_task_id]:
                raise DuplicateDependencyError(
                    f"Task {dep.task_id} already depends on {dep.depends_on_task_id}"
                )
            graph._link(dep)

        log.debug(f"Loaded schedule {schedule_id}: {len(graph._tasks)} tasks, "
                  f"{len(graph._dependencies)} dependencies")
        return graph

    def _add_task(self, task: Task):
        if task.schedule_id != self.schedule_id:
            raise SchedulingError(
                f"Task {task.id} belongs to schedule {task.schedule_id}, not {self.schedule_id}"
            )
        if task.id in self._tasks:
            raise SchedulingError(f"Duplicate task id {task.id}")
        self._tasks[task.id] = task.model_copy()
        self._index[task.id] = len(self._index)
        self._successors[task.id] = {}
        self._predecessors[task.id] = {}

    def _link(self, dep: Dependency):
        dep = dep.model_copy()
        self._dependencies[dep.id] = dep
        self._successors[dep.depends_on_task_id][dep.task_id] = Edge(
            dep.task_id, dep.dependency_type, dep.lag_days, dep.id)
        self._predecessors[dep.task_id][dep.depends_on_task_id] = Edge(
            dep.depends_on_task_id, dep.dependency_type, dep.lag_days, dep.id)

    # Queries

    def __contains__(self, task_id) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks.values())

    @property
    def dependencies(self) -> List[Dependency]:
        return list(self._dependencies.values())

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise TaskNotFoundError(task_id) from None

    def get_dependency(self, dependency_id: str) -> Optional[Dependency]:
        return self._dependencies.get(dependency_id)

    def has_edge(self, predecessor_id: str, successor_id: str) -> bool:
        return successor_id in self._successors.get(predecessor_id, {})

    def predecessors_of(self, task_id: str) -> List[Edge]:
        if task_id not in self._predecessors:
            raise TaskNotFoundError(task_id)
        return list(self._predecessors[task_id].values())

    def successors_of(self, task_id: str) -> List[Edge]:
        if task_id not in self._successors:
            raise TaskNotFoundError(task_id)
        return list(self._successors[task_id].values())

    def descendants_of(self, task_id: str) -> Set[str]:
        """Every task transitively reachable through successor edges."""
        seen: Set[str] = set()
        queue = deque(edge.task_id for edge in self.successors_of(task_id))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(edge.task_id for edge in self._successors[current].values())
        return seen

    def sort_key(self, task_id: str):
        return (self._tasks[task_id].sort_order, self._index[task_id])

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties go to the lower sort_order, then load order."""
        indegree = {tid: len(preds) for tid, preds in self._predecessors.items()}
        heap = [(self.sort_key(tid), tid) for tid, deg in indegree.items() if deg == 0]
        heapq.heapify(heap)

        order = []
        while heap:
            _, current = heapq.heappop(heap)
            order.append(current)
            for succ_id in self._successors[current]:
                indegree[succ_id] -= 1
                if indegree[succ_id] == 0:
                    heapq.heappush(heap, (self.sort_key(succ_id), succ_id))

        if len(order) != len(self._tasks):
            raise CycleError(find_cycle(self))
        return order

    # Mutations

    def add_dependency(self, dep: Dependency) -> Dependency:
        """Validate, then link. Raises without touching the graph on failure."""
        check_dependency(self, dep)
        self._link(dep)
        return self._dependencies[dep.id]

    def update_dependency(self, dependency_id: str,
                          dependency_type: Optional[DependencyType] = None,
                          lag_days: Optional[int] = None) -> Dependency:
        """Change an edge's type and/or lag in place; endpoints stay the same."""
        dep = self._dependencies.get(dependency_id)
        if dep is None:
            raise DependencyNotFoundError(dependency_id)
        changes = {}
        if dependency_type is not None:
            changes['dependency_type'] = dependency_type
        if lag_days is not None:
            changes['lag_days'] = lag_days
        self._link(dep.model_copy(update=changes))
        return self._dependencies[dependency_id]

    def remove_dependency(self, dependency_id: str) -> Optional[Dependency]:
        dep = self._dependencies.pop(dependency_id, None)
        if dep is None:
            return None
        self._successors[dep.depends_on_task_id].pop(dep.task_id, None)
        self._predecessors[dep.task_id].pop(dep.depends_on_task_id, None)
        return dep

    def remove_task(self, task_id: str) -> List[Dependency]:
        """Remove a task and every dependency touching it."""
        if task_id not in self._tasks:
            raise TaskNotFoundError(task_id)
        incident = [edge.dependency_id for edge in self._successors[task_id].values()]
        incident += [edge.dependency_id for edge in self._predecessors[task_id].values()]
        removed = [self.remove_dependency(dep_id) for dep_id in incident]
        del self._tasks[task_id]
        del self._successors[task_id]
        del self._predecessors[task_id]
        return [dep for dep in removed if dep is not None]

    def set_window(self, task_id: str, start: date, duration_days: int):
        task = self.get(task_id)
        self._tasks[task_id] = task.model_copy(update={
            'start_date': start,
            'end_date': window_end(start, duration_days),
            'duration_days': duration_days,
        })

    def set_critical(self, task_id: str, is_critical: bool):
        task = self.get(task_id)
        self._tasks[task_id] = task.model_copy(update={'is_critical': is_critical})

    def update_task(self, task_id: str, **fields) -> Task:
        """Replace non-window fields (name, status, progress) of one task."""
        task = self.get(task_id)
        self._tasks[task_id] = task.model_copy(update=fields)
        return self._tasks[task_id]
