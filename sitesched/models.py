from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import date, timedelta
from enum import Enum


class ConstraintType(str, Enum):
    NONE = "none"
    START_NO_EARLIER_THAN = "start_no_earlier_than"
    START_NO_LATER_THAN = "start_no_later_than"
    FINISH_NO_EARLIER_THAN = "finish_no_earlier_than"
    FINISH_NO_LATER_THAN = "finish_no_later_than"
    MUST_START_ON = "must_start_on"
    MUST_FINISH_ON = "must_finish_on"


class DependencyType(str, Enum):
    FINISH_TO_START = "finish_to_start"
    START_TO_START = "start_to_start"
    FINISH_TO_FINISH = "finish_to_finish"
    START_TO_FINISH = "start_to_finish"

    @classmethod
    def parse(cls, value) -> 'DependencyType':
        """Accept enum values, full names or the FS/SS/FF/SF shorthand."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        if not text:
            return cls.FINISH_TO_START
        short = {
            "FS": cls.FINISH_TO_START,
            "SS": cls.START_TO_START,
            "FF": cls.FINISH_TO_FINISH,
            "SF": cls.START_TO_FINISH,
        }
        if text.upper() in short:
            return short[text.upper()]
        return cls(text.lower())


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    AT_RISK = "at_risk"
    COMPLETE = "complete"


class ViolationKind(str, Enum):
    CONSTRAINT_VIOLATED = "constraint_violated"
    CONSTRAINT_CONFLICT = "constraint_conflict"


def window_end(start: date, duration_days: int) -> date:
    return start + timedelta(days=duration_days - 1)


class Task(BaseModel):
    id: str
    schedule_id: str
    name: str
    duration_days: int = Field(1, ge=1)
    start_date: date
    end_date: Optional[date] = None
    constraint_type: ConstraintType = ConstraintType.NONE
    constraint_date: Optional[date] = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    is_critical: bool = False
    progress: int = Field(0, ge=0, le=100)
    section: Optional[str] = None
    sort_order: int = 0

    @model_validator(mode='after')
    def check_window(self):
        if self.constraint_type != ConstraintType.NONE and self.constraint_date is None:
            raise ValueError(f"constraint_date is required for {self.constraint_type.value}")
        expected_end = window_end(self.start_date, self.duration_days)
        if self.end_date is None:
            self.end_date = expected_end
        elif self.end_date != expected_end:
            raise ValueError(
                f"end_date {self.end_date} does not match start_date {self.start_date} "
                f"plus {self.duration_days} day(s)"
            )
        return self


class Dependency(BaseModel):
    id: str
    schedule_id: str
    task_id: str  # Successor
    depends_on_task_id: str  # Predecessor
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    lag_days: int = 0


class Milestone(BaseModel):
    id: str
    schedule_id: str
    name: str
    target_date: date
    status: MilestoneStatus = MilestoneStatus.PENDING
    task_ids: List[str] = []


class ScheduleSnapshot(BaseModel):
    schedule_id: str
    tasks: List[Task] = []
    dependencies: List[Dependency] = []
    milestones: List[Milestone] = []


# Results

class TaskWindow(BaseModel):
    task_id: str
    old_start: date
    old_end: date
    new_start: date
    new_end: date


class ConstraintViolation(BaseModel):
    task_id: str
    kind: ViolationKind
    constraint_type: ConstraintType
    constraint_date: date
    driving_date: date
    resolved_start: date
    message: str = ""


class CascadeResult(BaseModel):
    schedule_id: str
    updated: List[TaskWindow] = []
    violations: List[ConstraintViolation] = []


class ScheduledTask(BaseModel):
    task_id: str
    name: str
    duration_days: int
    start_date: date
    end_date: date
    earliest_start: date
    earliest_finish: date
    latest_start: date
    latest_finish: date
    slack_days: int
    is_critical: bool


class CPMResult(BaseModel):
    schedule_id: str
    project_start: date
    project_finish: Optional[date] = None
    tasks: List[ScheduledTask] = []
    critical_path: List[str] = []
    violations: List[ConstraintViolation] = []


class MilestoneEvaluation(BaseModel):
    milestone_id: str
    name: str
    old_status: MilestoneStatus
    new_status: MilestoneStatus

    @property
    def changed(self) -> bool:
        return self.old_status != self.new_status


# Requests

class DateChangeRequest(BaseModel):
    new_start: Optional[date] = None  # Omitted: keep duration, shift to new_end
    new_end: date


class DependencyCreate(BaseModel):
    task_id: str
    depends_on_task_id: str
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    lag_days: int = 0


class DependencyUpdate(BaseModel):
    dependency_type: Optional[DependencyType] = None
    lag_days: Optional[int] = None


class TaskCreate(BaseModel):
    name: str
    duration_days: int = Field(1, ge=1)
    start_date: date
    constraint_type: ConstraintType = ConstraintType.NONE
    constraint_date: Optional[date] = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    progress: int = Field(0, ge=0, le=100)
    section: Optional[str] = None
    sort_order: Optional[int] = None


class TaskUpdate(BaseModel):
    """Fields that may change without moving the task's window."""
    name: Optional[str] = None
    status: Optional[TaskStatus] = None
    progress: Optional[int] = Field(None, ge=0, le=100)


class MilestoneCreate(BaseModel):
    name: str
    target_date: date
    task_ids: List[str] = []


class RecomputeRequest(BaseModel):
    project_start: date
