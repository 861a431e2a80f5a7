from typing import List, Optional


class SchedulingError(Exception):
    """Base exception for all scheduling errors."""
    pass


class CycleError(SchedulingError):
    """The dependency graph is not (or would no longer be) a DAG."""

    def __init__(self, cycle: Optional[List[str]] = None, message: Optional[str] = None):
        self.cycle = list(cycle or [])
        if message is None:
            if self.cycle:
                message = "Dependency cycle detected: " + " -> ".join(self.cycle)
            else:
                message = "Dependency cycle detected"
        super().__init__(message)


class InvalidEdgeError(SchedulingError):
    """Self-loop, cross-schedule or dangling dependency."""
    pass


class DuplicateDependencyError(InvalidEdgeError):
    """The same predecessor/successor pair is already linked."""
    pass


class TaskNotFoundError(SchedulingError, KeyError):
    """A task id is not part of the schedule."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        SchedulingError.__init__(self, f"Task {task_id} not found in schedule")

    def __str__(self):
        return self.args[0]


class DependencyNotFoundError(SchedulingError, KeyError):
    """A dependency id is not part of the schedule."""

    def __init__(self, dependency_id: str):
        self.dependency_id = dependency_id
        SchedulingError.__init__(self, f"Dependency {dependency_id} not found in schedule")

    def __str__(self):
        return self.args[0]


class TemplateError(SchedulingError):
    """A schedule template could not be parsed."""
    pass


class PersistenceError(SchedulingError):
    """The persistence collaborator failed; the transaction was rolled back."""
    pass


class ConfigError(SchedulingError):
    """Settings file is unreadable or malformed."""
    pass
