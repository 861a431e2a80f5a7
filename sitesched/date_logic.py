from collections import deque
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from .errors import SchedulingError
from .logs import get_logger
from .models import (
    CascadeResult, ConstraintType, ConstraintViolation, DependencyType, Task, TaskWindow,
    ViolationKind, window_end,
)
from .validity import validate_graph

log = get_logger("date_logic")


def driving_start(pred_start: date, pred_end: date, dependency_type: DependencyType,
                  lag_days: int, duration_days: int) -> date:
    """Earliest start a single predecessor edge allows for its successor."""
    if dependency_type == DependencyType.FINISH_TO_START:
        return pred_end + timedelta(days=lag_days + 1)
    elif dependency_type == DependencyType.START_TO_START:
        return pred_start + timedelta(days=lag_days)
    elif dependency_type == DependencyType.FINISH_TO_FINISH:
        return pred_end + timedelta(days=lag_days - duration_days + 1)
    elif dependency_type == DependencyType.START_TO_FINISH:
        return pred_start + timedelta(days=lag_days - duration_days + 1)
    raise ValueError(f"Unknown dependency type: {dependency_type}")


def _violation(task: Task, kind: ViolationKind, driving: date, resolved: date,
               message: str) -> ConstraintViolation:
    log.warning(f"Task {task.id} ({task.name}): {message}")
    return ConstraintViolation(
        task_id=task.id,
        kind=kind,
        constraint_type=task.constraint_type,
        constraint_date=task.constraint_date,
        driving_date=driving,
        resolved_start=resolved,
        message=message,
    )


def apply_constraint(task: Task, driving: date,
                     duration_days: int) -> Tuple[date, Optional[ConstraintViolation]]:
    """Resolve a task's start from its driving date and its own constraint.

    ``must_*`` constraints win outright; ``*_no_earlier_than`` only raises
    the start; ``*_no_later_than`` clamps to the cap and reports it.
    """
    ctype = task.constraint_type
    cdate = task.constraint_date
    offset = timedelta(days=duration_days - 1)

    if ctype == ConstraintType.NONE:
        return driving, None
    elif ctype == ConstraintType.START_NO_EARLIER_THAN:
        return max(driving, cdate), None
    elif ctype == ConstraintType.FINISH_NO_EARLIER_THAN:
        return max(driving, cdate - offset), None
    elif ctype in (ConstraintType.START_NO_LATER_THAN, ConstraintType.FINISH_NO_LATER_THAN):
        cap = cdate if ctype == ConstraintType.START_NO_LATER_THAN else cdate - offset
        if driving <= cap:
            return driving, None
        return cap, _violation(
            task, ViolationKind.CONSTRAINT_VIOLATED, driving, cap,
            f"driving date {driving} exceeds {ctype.value} {cdate}",
        )
    elif ctype in (ConstraintType.MUST_START_ON, ConstraintType.MUST_FINISH_ON):
        fixed = cdate if ctype == ConstraintType.MUST_START_ON else cdate - offset
        if fixed >= driving:
            return fixed, None
        return fixed, _violation(
            task, ViolationKind.CONSTRAINT_CONFLICT, driving, fixed,
            f"{ctype.value} {cdate} is earlier than predecessor driving date {driving}",
        )
    raise ValueError(f"Unknown constraint type: {ctype}")


def check_manual_window(task: Task, start: date,
                        duration_days: int) -> Optional[ConstraintViolation]:
    """Report a hand-placed window that breaks the task's own constraint."""
    ctype = task.constraint_type
    cdate = task.constraint_date
    offset = timedelta(days=duration_days - 1)

    if ctype == ConstraintType.NONE:
        return None
    elif ctype == ConstraintType.START_NO_EARLIER_THAN:
        broken = start < cdate
    elif ctype == ConstraintType.FINISH_NO_EARLIER_THAN:
        broken = start + offset < cdate
    elif ctype == ConstraintType.START_NO_LATER_THAN:
        broken = start > cdate
    elif ctype == ConstraintType.FINISH_NO_LATER_THAN:
        broken = start + offset > cdate
    elif ctype == ConstraintType.MUST_START_ON:
        if start == cdate:
            return None
        return _violation(task, ViolationKind.CONSTRAINT_CONFLICT, start, start,
                          f"manual start {start} ignores {ctype.value} {cdate}")
    elif ctype == ConstraintType.MUST_FINISH_ON:
        if start + offset == cdate:
            return None
        return _violation(task, ViolationKind.CONSTRAINT_CONFLICT, start, start,
                          f"manual finish {start + offset} ignores {ctype.value} {cdate}")
    else:
        raise ValueError(f"Unknown constraint type: {ctype}")

    if not broken:
        return None
    return _violation(task, ViolationKind.CONSTRAINT_VIOLATED, start, start,
                      f"manual window {start}..{start + offset} breaks {ctype.value} {cdate}")


def _window(graph, scratch: Dict[str, Tuple[date, int]], task_id: str) -> Tuple[date, date]:
    if task_id in scratch:
        start, duration = scratch[task_id]
        return start, window_end(start, duration)
    task = graph.get(task_id)
    return task.start_date, task.end_date


def _recompute(graph, task_id: str, scratch: Dict[str, Tuple[date, int]],
               violations: List[ConstraintViolation]) -> bool:
    task = graph.get(task_id)
    driving = max(
        driving_start(*_window(graph, scratch, edge.task_id), edge.dependency_type,
                      edge.lag_days, task.duration_days)
        for edge in graph.predecessors_of(task_id)
    )
    start, violation = apply_constraint(task, driving, task.duration_days)
    if violation:
        violations.append(violation)
    log.debug(f"Task {task_id}: driving {driving}, resolved start {start}")
    if start == task.start_date:
        return False
    scratch[task_id] = (start, task.duration_days)
    return True


def propagate(graph, task_id: str, new_start: date, new_end: date) -> CascadeResult:
    """Move one task and cascade the change through its dependents.

    Only descendants of the edited task are visited, each exactly once and
    only after all of its affected predecessors. A task whose window comes
    out unchanged does not disturb its successors. Nothing is written to
    the graph until the whole walk has succeeded.
    """
    validate_graph(graph)
    task = graph.get(task_id)
    if new_end < new_start:
        raise SchedulingError(f"new_end {new_end} is before new_start {new_start}")

    duration = (new_end - new_start).days + 1
    scratch: Dict[str, Tuple[date, int]] = {task_id: (new_start, duration)}
    violations: List[ConstraintViolation] = []

    own = check_manual_window(task, new_start, duration)
    if own:
        violations.append(own)

    affected = graph.descendants_of(task_id)
    indegree = {
        tid: sum(1 for edge in graph.predecessors_of(tid)
                 if edge.task_id in affected or edge.task_id == task_id)
        for tid in affected
    }
    dirty = set()
    queue = deque([task_id])
    while queue:
        current = queue.popleft()
        if current == task_id:
            moved = True
        elif current in dirty:
            moved = _recompute(graph, current, scratch, violations)
        else:
            moved = False

        for edge in graph.successors_of(current):
            if moved:
                dirty.add(edge.task_id)
            indegree[edge.task_id] -= 1
            if indegree[edge.task_id] == 0:
                queue.append(edge.task_id)

    updated = []
    for tid, (start, dur) in scratch.items():
        old = graph.get(tid)
        if start == old.start_date and dur == old.duration_days:
            continue
        updated.append(TaskWindow(
            task_id=tid,
            old_start=old.start_date,
            old_end=old.end_date,
            new_start=start,
            new_end=window_end(start, dur),
        ))
        graph.set_window(tid, start, dur)

    log.info(f"Cascade from task {task_id} in schedule {graph.schedule_id}: "
             f"{len(updated)} task(s) moved, {len(violations)} violation(s)")
    return CascadeResult(schedule_id=graph.schedule_id, updated=updated, violations=violations)


def shift_to_end(graph, task_id: str, new_end: date) -> CascadeResult:
    """Move a task so it finishes on ``new_end``, keeping its duration."""
    task = graph.get(task_id)
    new_start = new_end - timedelta(days=task.duration_days - 1)
    return propagate(graph, task_id, new_start, new_end)
