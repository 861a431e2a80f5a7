"""Shared fixtures for the scheduling tests."""

from datetime import date
from typing import List

import pytest

from sitesched import database
from sitesched.errors import TaskNotFoundError
from sitesched.graph import ScheduleGraph
from sitesched.models import Dependency, DependencyType, ScheduleSnapshot, Task

SCHEDULE = "s1"


def jan(day: int) -> date:
    return date(2024, 1, day)


@pytest.fixture
def make_task():
    def _make(task_id, start=jan(1), duration=1, schedule_id=SCHEDULE, **kwargs):
        return Task(id=task_id, schedule_id=schedule_id, name=kwargs.pop('name', task_id.upper()),
                    duration_days=duration, start_date=start, **kwargs)
    return _make


@pytest.fixture
def make_dep():
    def _make(successor, predecessor, dependency_type=DependencyType.FINISH_TO_START, lag=0,
              schedule_id=SCHEDULE, dep_id=None):
        return Dependency(id=dep_id or f"{predecessor}->{successor}", schedule_id=schedule_id,
                          task_id=successor, depends_on_task_id=predecessor,
                          dependency_type=dependency_type, lag_days=lag)
    return _make


@pytest.fixture
def chain_graph(make_task, make_dep):
    """A (3 days, Jan 1-3) -> B (2 days, Jan 4-5), finish-to-start, no lag."""
    tasks = [make_task("a", jan(1), 3), make_task("b", jan(4), 2)]
    return ScheduleGraph.load(tasks, [make_dep("b", "a")])


class InMemoryRepository:
    """Stands in for the database module in service tests."""

    def __init__(self, snapshot: ScheduleSnapshot):
        self.snapshot = snapshot
        self.calls: List[str] = []

    def load_schedule(self, schedule_id):
        self.calls.append("load_schedule")
        return self.snapshot.model_copy(deep=True)

    def _task_index(self, task_id):
        for i, t in enumerate(self.snapshot.tasks):
            if t.id == task_id:
                return i
        raise TaskNotFoundError(task_id)

    def add_records(self, tasks, dependencies):
        self.calls.append("add_records")
        self.snapshot.tasks.extend(tasks)
        self.snapshot.dependencies.extend(dependencies)

    def add_dependency(self, dep):
        self.calls.append("add_dependency")
        self.snapshot.dependencies.append(dep)

    def delete_dependency(self, schedule_id, dependency_id):
        self.calls.append("delete_dependency")
        before = len(self.snapshot.dependencies)
        self.snapshot.dependencies = [d for d in self.snapshot.dependencies if d.id != dependency_id]
        return len(self.snapshot.dependencies) < before

    def delete_task(self, schedule_id, task_id):
        self.calls.append("delete_task")
        del self.snapshot.tasks[self._task_index(task_id)]
        self.snapshot.dependencies = [
            d for d in self.snapshot.dependencies
            if task_id not in (d.task_id, d.depends_on_task_id)
        ]

    def _set_window(self, task_id, start, end, **extra):
        i = self._task_index(task_id)
        self.snapshot.tasks[i] = self.snapshot.tasks[i].model_copy(update={
            'start_date': start, 'end_date': end,
            'duration_days': (end - start).days + 1, **extra,
        })

    def save_windows(self, schedule_id, windows):
        self.calls.append("save_windows")
        for w in windows:
            self._set_window(w.task_id, w.new_start, w.new_end)

    def save_cpm_result(self, schedule_id, result):
        self.calls.append("save_cpm_result")
        for item in result.tasks:
            self._set_window(item.task_id, item.start_date, item.end_date,
                             is_critical=item.is_critical)

    def save_template_instantiation(self, schedule_id, tasks, dependencies, result):
        self.calls.append("save_template_instantiation")
        self.snapshot.tasks.extend(tasks)
        self.snapshot.dependencies.extend(dependencies)
        for item in result.tasks:
            self._set_window(item.task_id, item.start_date, item.end_date,
                             is_critical=item.is_critical)

    def update_task_fields(self, schedule_id, task_id, fields):
        self.calls.append("update_task_fields")
        i = self._task_index(task_id)
        self.snapshot.tasks[i] = self.snapshot.tasks[i].model_copy(update=fields)

    def update_dependency(self, dep, windows):
        self.calls.append("update_dependency")
        self.snapshot.dependencies = [dep if d.id == dep.id else d
                                      for d in self.snapshot.dependencies]
        for w in windows:
            self._set_window(w.task_id, w.new_start, w.new_end)

    def add_milestone(self, milestone):
        self.calls.append("add_milestone")
        self.snapshot.milestones.append(milestone)

    def save_milestone_statuses(self, schedule_id, evaluations):
        self.calls.append("save_milestone_statuses")
        by_id = {e.milestone_id: e.new_status for e in evaluations}
        self.snapshot.milestones = [
            m.model_copy(update={'status': by_id[m.id]}) if m.id in by_id else m
            for m in self.snapshot.milestones
        ]


@pytest.fixture
def sqlite_db(tmp_path, monkeypatch):
    """A fresh SQLite database wired into the database module."""
    monkeypatch.setattr(database, "SessionLocal", None)
    engine = database.init_db(f"sqlite:///{tmp_path / 'schedule.db'}")
    yield engine
    engine.dispose()
