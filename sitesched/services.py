import threading
import uuid
import weakref
from datetime import date, timedelta
from typing import Dict, List, Optional, Set, Tuple

from . import database
from .date_logic import apply_constraint, driving_start, propagate, shift_to_end
from .errors import SchedulingError, TaskNotFoundError
from .graph import ScheduleGraph
from .logs import get_logger
from .milestones import evaluate_milestones
from .models import (
    CascadeResult, ConstraintType, CPMResult, Dependency, DependencyCreate, DependencyType,
    DependencyUpdate, Milestone, MilestoneCreate, MilestoneEvaluation, ScheduledTask,
    ScheduleSnapshot, Task, TaskCreate, TaskUpdate, window_end,
)
from .templates import (
    DEFAULT_DURATION_DAYS, TemplateRow, instantiate_template as build_template_records,
)
from .validity import validate_graph

log = get_logger("services")


def _days(n: int) -> timedelta:
    return timedelta(days=n)


def latest_finish_limit(task: Task, duration_days: int) -> Optional[date]:
    """The latest finish a task's own constraint allows, if it sets one."""
    ctype = task.constraint_type
    cdate = task.constraint_date
    if ctype in (ConstraintType.NONE, ConstraintType.START_NO_EARLIER_THAN,
                 ConstraintType.FINISH_NO_EARLIER_THAN):
        return None
    elif ctype in (ConstraintType.START_NO_LATER_THAN, ConstraintType.MUST_START_ON):
        return window_end(cdate, duration_days)
    elif ctype in (ConstraintType.FINISH_NO_LATER_THAN, ConstraintType.MUST_FINISH_ON):
        return cdate
    raise ValueError(f"Unknown constraint type: {ctype}")


def latest_finish_through(dependency_type: DependencyType, lag_days: int, pred_duration: int,
                          succ_latest_start: date, succ_latest_finish: date) -> date:
    """Latest finish a predecessor may have without delaying one successor."""
    if dependency_type == DependencyType.FINISH_TO_START:
        return succ_latest_start - _days(lag_days + 1)
    elif dependency_type == DependencyType.START_TO_START:
        return succ_latest_start - _days(lag_days - pred_duration + 1)
    elif dependency_type == DependencyType.FINISH_TO_FINISH:
        return succ_latest_finish - _days(lag_days)
    elif dependency_type == DependencyType.START_TO_FINISH:
        return succ_latest_finish - _days(lag_days - pred_duration + 1)
    raise ValueError(f"Unknown dependency type: {dependency_type}")


class Scheduler:
    """Critical Path Method over one validated schedule graph.

    The forward pass publishes as-soon-as-possible dates (hard constraints
    win); the backward pass yields latest dates and slack. Dates and
    critical flags are written to the graph only once both passes finish.
    """

    def __init__(self, graph: ScheduleGraph):
        self.graph = graph

    def run(self, project_start: date) -> CPMResult:
        graph = self.graph
        validate_graph(graph)
        order = graph.topological_order()
        if not order:
            return CPMResult(schedule_id=graph.schedule_id, project_start=project_start)

        durations = {tid: graph.get(tid).duration_days for tid in order}
        violations = []
        # Tasks whose own constraint, not a predecessor, fixes the start or finish
        pinned: Set[str] = set()
        capped: Set[str] = set()

        # Forward pass
        es: Dict[str, date] = {}
        ef: Dict[str, date] = {}
        for tid in order:
            task = graph.get(tid)
            preds = graph.predecessors_of(tid)
            if preds:
                driving = max(
                    driving_start(es[e.task_id], ef[e.task_id], e.dependency_type,
                                  e.lag_days, durations[tid])
                    for e in preds
                )
            else:
                driving = project_start
            start, violation = apply_constraint(task, driving, durations[tid])
            if violation:
                violations.append(violation)
            if start > driving:
                pinned.add(tid)
            es[tid] = start
            ef[tid] = window_end(start, durations[tid])

        project_finish = max(ef.values())

        # Backward pass
        lf: Dict[str, date] = {}
        ls: Dict[str, date] = {}
        for tid in reversed(order):
            task = graph.get(tid)
            latest = min(
                [project_finish] +
                [latest_finish_through(e.dependency_type, e.lag_days, durations[tid],
                                       ls[e.task_id], lf[e.task_id])
                 for e in graph.successors_of(tid)]
            )
            own = latest_finish_limit(task, durations[tid])
            if own is not None and own < latest:
                latest = own
                capped.add(tid)
            lf[tid] = latest
            ls[tid] = latest - _days(durations[tid] - 1)

        slack = {tid: (ls[tid] - es[tid]).days for tid in order}
        critical = {tid for tid in order if slack[tid] <= 0}
        critical_path = self._critical_chain(order, critical, es, ef, durations, project_finish,
                                             pinned, capped)

        scheduled = []
        for tid in order:
            task = graph.get(tid)
            scheduled.append(ScheduledTask(
                task_id=tid,
                name=task.name,
                duration_days=durations[tid],
                start_date=es[tid],
                end_date=ef[tid],
                earliest_start=es[tid],
                earliest_finish=ef[tid],
                latest_start=ls[tid],
                latest_finish=lf[tid],
                slack_days=slack[tid],
                is_critical=tid in critical,
            ))

        for item in scheduled:
            graph.set_window(item.task_id, item.start_date, item.duration_days)
            graph.set_critical(item.task_id, item.is_critical)

        log.info(f"Auto-scheduled {len(order)} task(s) in schedule {graph.schedule_id}: "
                 f"{project_start} -> {project_finish}, {len(critical_path)} on the critical path")
        return CPMResult(
            schedule_id=graph.schedule_id,
            project_start=project_start,
            project_finish=project_finish,
            tasks=scheduled,
            critical_path=critical_path,
            violations=violations,
        )

    def _critical_chain(self, order: List[str], critical: Set[str], es, ef, durations,
                        project_finish: date, pinned: Set[str] = frozenset(),
                        capped: Set[str] = frozenset()) -> List[str]:
        """Critical tasks joined by binding edges from a chain start to a chain end.

        A chain starts at the project start or at a task pinned later by its own
        constraint; it ends at the project finish or at a task whose own
        constraint caps its finish. Parallel chains are all listed, in
        topological order.
        """
        graph = self.graph

        def binding(pred_id, edge_to_succ):
            succ_id = edge_to_succ.task_id
            return (pred_id in critical and succ_id in critical and
                    driving_start(es[pred_id], ef[pred_id], edge_to_succ.dependency_type,
                                  edge_to_succ.lag_days, durations[succ_id]) == es[succ_id])

        earliest = min(es.values())
        reach_forward = set()
        for tid in order:
            if tid not in critical:
                continue
            if es[tid] == earliest or tid in pinned or any(
                    e.task_id in reach_forward and binding(e.task_id, _reverse(e, tid))
                    for e in graph.predecessors_of(tid)):
                reach_forward.add(tid)

        reach_back = set()
        for tid in reversed(order):
            if tid not in critical:
                continue
            if ef[tid] == project_finish or tid in capped or any(
                    e.task_id in reach_back and binding(tid, e)
                    for e in graph.successors_of(tid)):
                reach_back.add(tid)

        return [tid for tid in order if tid in reach_forward and tid in reach_back]


def _reverse(pred_edge, succ_id):
    """Turn a predecessor edge of ``succ_id`` into the matching successor edge."""
    return pred_edge._replace(task_id=succ_id)


class ScheduleService:
    """Entry points used by the API layer.

    Each call builds a fresh graph from the repository, runs one core
    operation and persists what changed. Calls against the same schedule
    are serialised; different schedules proceed in parallel.
    """

    def __init__(self, repository=database):
        self.repository = repository
        # Entries vanish once no caller holds the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def lock_for(self, schedule_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(schedule_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[schedule_id] = lock
            return lock

    def load_snapshot(self, schedule_id: str) -> ScheduleSnapshot:
        return self.repository.load_schedule(schedule_id)

    def load_graph(self, schedule_id: str) -> Tuple[ScheduleGraph, ScheduleSnapshot]:
        snapshot = self.load_snapshot(schedule_id)
        graph = ScheduleGraph.load(snapshot.tasks, snapshot.dependencies, schedule_id=schedule_id)
        return graph, snapshot

    def _refresh_milestones(self, schedule_id: str, graph: ScheduleGraph,
                            milestones: List[Milestone]) -> List[MilestoneEvaluation]:
        evaluations = evaluate_milestones(graph, milestones)
        changed = [e for e in evaluations if e.changed]
        if changed:
            self.repository.save_milestone_statuses(schedule_id, changed)
        return evaluations

    def apply_date_change(self, schedule_id: str, task_id: str, new_start: Optional[date],
                          new_end: date) -> Tuple[CascadeResult, List[MilestoneEvaluation]]:
        with self.lock_for(schedule_id):
            graph, snapshot = self.load_graph(schedule_id)
            if new_start is None:
                result = shift_to_end(graph, task_id, new_end)
            else:
                result = propagate(graph, task_id, new_start, new_end)
            if result.updated:
                self.repository.save_windows(schedule_id, result.updated)
            evaluations = self._refresh_milestones(schedule_id, graph, snapshot.milestones)
            return result, evaluations

    def insert_dependency(self, schedule_id: str, request: DependencyCreate) -> Dependency:
        with self.lock_for(schedule_id):
            graph, _ = self.load_graph(schedule_id)
            dep = Dependency(id=str(uuid.uuid4()), schedule_id=schedule_id, **request.model_dump())
            graph.add_dependency(dep)
            self.repository.add_dependency(dep)
            log.info(f"Linked {dep.depends_on_task_id} -> {dep.task_id} "
                     f"({dep.dependency_type.value}, lag {dep.lag_days})")
            return dep

    def update_dependency(self, schedule_id: str, dependency_id: str, request: DependencyUpdate
                          ) -> Tuple[Dependency, CascadeResult, List[MilestoneEvaluation]]:
        """Change an edge's type or lag and cascade from its predecessor."""
        if request.dependency_type is None and request.lag_days is None:
            raise SchedulingError("No fields to update")
        with self.lock_for(schedule_id):
            graph, snapshot = self.load_graph(schedule_id)
            dep = graph.update_dependency(dependency_id, request.dependency_type, request.lag_days)
            predecessor = graph.get(dep.depends_on_task_id)
            result = propagate(graph, predecessor.id, predecessor.start_date, predecessor.end_date)
            self.repository.update_dependency(dep, result.updated)
            log.info(f"Updated dependency {dep.id}: {dep.dependency_type.value}, lag {dep.lag_days}")
            evaluations = self._refresh_milestones(schedule_id, graph, snapshot.milestones)
            return dep, result, evaluations

    def remove_dependency(self, schedule_id: str, dependency_id: str) -> bool:
        with self.lock_for(schedule_id):
            return self.repository.delete_dependency(schedule_id, dependency_id)

    def remove_task(self, schedule_id: str, task_id: str) -> List[str]:
        """Delete a task; returns the ids of the dependencies removed with it."""
        with self.lock_for(schedule_id):
            graph, _ = self.load_graph(schedule_id)
            removed = graph.remove_task(task_id)
            self.repository.delete_task(schedule_id, task_id)
            return [dep.id for dep in removed]

    def recompute_schedule(self, schedule_id: str,
                           project_start: date) -> Tuple[CPMResult, List[MilestoneEvaluation]]:
        with self.lock_for(schedule_id):
            graph, snapshot = self.load_graph(schedule_id)
            result = Scheduler(graph).run(project_start)
            self.repository.save_cpm_result(schedule_id, result)
            evaluations = self._refresh_milestones(schedule_id, graph, snapshot.milestones)
            return result, evaluations

    def evaluate_milestones(self, schedule_id: str) -> List[MilestoneEvaluation]:
        with self.lock_for(schedule_id):
            graph, snapshot = self.load_graph(schedule_id)
            return self._refresh_milestones(schedule_id, graph, snapshot.milestones)

    def create_task(self, schedule_id: str, request: TaskCreate) -> Task:
        with self.lock_for(schedule_id):
            snapshot = self.load_snapshot(schedule_id)
            data = request.model_dump()
            if data['sort_order'] is None:
                data['sort_order'] = max((t.sort_order for t in snapshot.tasks), default=0) + 1
            task = Task(id=str(uuid.uuid4()), schedule_id=schedule_id, **data)
            self.repository.add_records([task], [])
            return task

    def update_task(self, schedule_id: str, task_id: str,
                    request: TaskUpdate) -> Tuple[Task, List[MilestoneEvaluation]]:
        """Rename a task or record its status/progress, then re-derive milestones."""
        fields = request.model_dump(exclude_none=True)
        if not fields:
            raise SchedulingError("No fields to update")
        with self.lock_for(schedule_id):
            graph, snapshot = self.load_graph(schedule_id)
            task = graph.update_task(task_id, **fields)
            self.repository.update_task_fields(schedule_id, task_id, fields)
            evaluations = self._refresh_milestones(schedule_id, graph, snapshot.milestones)
            return task, evaluations

    def create_milestone(self, schedule_id: str, request: MilestoneCreate) -> Milestone:
        with self.lock_for(schedule_id):
            graph, _ = self.load_graph(schedule_id)
            for task_id in request.task_ids:
                if task_id not in graph:
                    raise TaskNotFoundError(task_id)
            milestone = Milestone(id=str(uuid.uuid4()), schedule_id=schedule_id,
                                  **request.model_dump())
            self.repository.add_milestone(milestone)
            return milestone

    def instantiate_template(self, schedule_id: str, rows: List[TemplateRow], project_start: date,
                             default_duration: int = DEFAULT_DURATION_DAYS,
                             sequential: bool = False) -> CPMResult:
        """Create tasks from a template and auto-schedule the whole schedule."""
        with self.lock_for(schedule_id):
            snapshot = self.load_snapshot(schedule_id)
            tasks, dependencies = build_template_records(
                schedule_id, rows, project_start,
                default_duration=default_duration, sequential=sequential,
            )
            offset = max((t.sort_order for t in snapshot.tasks), default=0)
            tasks = [t.model_copy(update={'sort_order': t.sort_order + offset}) for t in tasks]

            graph = ScheduleGraph.load(snapshot.tasks + tasks,
                                       snapshot.dependencies + dependencies,
                                       schedule_id=schedule_id)
            result = Scheduler(graph).run(project_start)

            self.repository.save_template_instantiation(
                schedule_id, [graph.get(t.id) for t in tasks], dependencies, result)
            log.info(f"Instantiated {len(tasks)} template task(s) in schedule {schedule_id}")
            return result
