from typing import Iterable, List

from .logs import get_logger
from .models import Milestone, MilestoneEvaluation, MilestoneStatus, TaskStatus

log = get_logger("milestones")


def milestone_status(graph, milestone: Milestone) -> MilestoneStatus:
    """Derive a milestone's status from its tasks' current state.

    A milestone with no surviving tasks stays pending.
    """
    tasks = [graph.get(task_id) for task_id in milestone.task_ids if task_id in graph]
    if tasks and all(task.status == TaskStatus.COMPLETE for task in tasks):
        return MilestoneStatus.COMPLETE
    if any(task.end_date > milestone.target_date for task in tasks):
        return MilestoneStatus.AT_RISK
    return MilestoneStatus.PENDING


def evaluate_milestones(graph, milestones: Iterable[Milestone]) -> List[MilestoneEvaluation]:
    results = []
    for milestone in milestones:
        new_status = milestone_status(graph, milestone)
        result = MilestoneEvaluation(
            milestone_id=milestone.id,
            name=milestone.name,
            old_status=milestone.status,
            new_status=new_status,
        )
        if result.changed:
            log.info(f"Milestone {milestone.name}: {milestone.status.value} -> {new_status.value}")
        results.append(result)
    return results
