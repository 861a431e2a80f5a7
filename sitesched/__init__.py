"""
sitesched - construction schedule cascading.

Tasks joined by precedence dependencies form a DAG per schedule. Moving a
task cascades new windows through its dependents, a full recompute runs
the Critical Path Method, and milestones are re-derived from their tasks.
"""

from .errors import (
    SchedulingError,
    CycleError,
    InvalidEdgeError,
    DuplicateDependencyError,
    DependencyNotFoundError,
    TaskNotFoundError,
)
from .models import (
    ConstraintType,
    DependencyType,
    TaskStatus,
    MilestoneStatus,
    Task,
    Dependency,
    Milestone,
    CascadeResult,
    CPMResult,
)
from .graph import ScheduleGraph
from .date_logic import propagate
from .services import Scheduler, ScheduleService
from .milestones import evaluate_milestones

__version__ = "0.1.0"

__all__ = [
    "SchedulingError",
    "CycleError",
    "InvalidEdgeError",
    "DuplicateDependencyError",
    "DependencyNotFoundError",
    "TaskNotFoundError",
    "ConstraintType",
    "DependencyType",
    "TaskStatus",
    "MilestoneStatus",
    "Task",
    "Dependency",
    "Milestone",
    "CascadeResult",
    "CPMResult",
    "ScheduleGraph",
    "propagate",
    "Scheduler",
    "ScheduleService",
    "evaluate_milestones",
]
