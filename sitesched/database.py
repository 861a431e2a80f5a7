from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint, create_engine,
    or_,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import load_settings
from .errors import DependencyNotFoundError, PersistenceError, TaskNotFoundError
from .logs import get_logger
from .models import (
    CPMResult, Dependency, Milestone, MilestoneEvaluation, ScheduleSnapshot, Task, TaskWindow,
)

log = get_logger("database")

Base = declarative_base()
SessionLocal = None


class TaskRecord(Base):
    __tablename__ = 'schedule_tasks'

    id = Column(String, primary_key=True)
    schedule_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    duration_days = Column(Integer, nullable=False, default=1)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    constraint_type = Column(String, nullable=False, default='none')
    constraint_date = Column(Date)
    status = Column(String, nullable=False, default='not_started')
    is_critical = Column(Boolean, nullable=False, default=False)
    progress = Column(Integer, nullable=False, default=0)
    section = Column(String)
    sort_order = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, default=datetime.now, onupdate=datetime.now)


class DependencyRecord(Base):
    __tablename__ = 'schedule_dependencies'
    __table_args__ = (UniqueConstraint('depends_on_task_id', 'task_id'),)

    id = Column(String, primary_key=True)
    schedule_id = Column(String, index=True, nullable=False)
    task_id = Column(String, ForeignKey('schedule_tasks.id'), nullable=False)
    depends_on_task_id = Column(String, ForeignKey('schedule_tasks.id'), nullable=False)
    dependency_type = Column(String, nullable=False, default='finish_to_start')
    lag_days = Column(Integer, nullable=False, default=0)


class MilestoneRecord(Base):
    __tablename__ = 'schedule_milestones'

    id = Column(String, primary_key=True)
    schedule_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    target_date = Column(Date, nullable=False)
    status = Column(String, nullable=False, default='pending')


class MilestoneTaskRecord(Base):
    __tablename__ = 'schedule_milestone_tasks'

    milestone_id = Column(String, ForeignKey('schedule_milestones.id'), primary_key=True)
    task_id = Column(String, ForeignKey('schedule_tasks.id'), primary_key=True)


def get_db_url() -> Optional[str]:
    return load_settings().database_url


def init_db(url: Optional[str] = None):
    global SessionLocal
    url = url or get_db_url()
    if not url:
        log.warning("Database URL not configured. Skipping DB initialization.")
        return None

    kwargs = {}
    if url.startswith('sqlite'):
        kwargs['connect_args'] = {'check_same_thread': False}
    engine = create_engine(url, **kwargs)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)
    log.info("Database initialization complete.")
    return engine


def get_session():
    if SessionLocal is None:
        raise PersistenceError("Database is not configured")
    return SessionLocal()


@contextmanager
def session_scope(action: str):
    """One session, one transaction; roll back and re-raise on failure."""
    session = get_session()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        log.error(f"DB Error {action}: {e}")
        raise PersistenceError(f"{action} failed: {e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _task_from_record(r: TaskRecord) -> Task:
    return Task(
        id=r.id, schedule_id=r.schedule_id, name=r.name, duration_days=r.duration_days,
        start_date=r.start_date, end_date=r.end_date,
        constraint_type=r.constraint_type, constraint_date=r.constraint_date,
        status=r.status, is_critical=r.is_critical, progress=r.progress,
        section=r.section, sort_order=r.sort_order,
    )


def _task_record(t: Task) -> TaskRecord:
    return TaskRecord(
        id=t.id, schedule_id=t.schedule_id, name=t.name, duration_days=t.duration_days,
        start_date=t.start_date, end_date=t.end_date,
        constraint_type=t.constraint_type.value, constraint_date=t.constraint_date,
        status=t.status.value, is_critical=t.is_critical, progress=t.progress,
        section=t.section, sort_order=t.sort_order,
    )


def _dependency_record(d: Dependency) -> DependencyRecord:
    return DependencyRecord(
        id=d.id, schedule_id=d.schedule_id, task_id=d.task_id,
        depends_on_task_id=d.depends_on_task_id,
        dependency_type=d.dependency_type.value, lag_days=d.lag_days,
    )


def load_schedule(schedule_id: str) -> ScheduleSnapshot:
    with session_scope("load_schedule") as session:
        tasks = (session.query(TaskRecord).filter_by(schedule_id=schedule_id)
                 .order_by(TaskRecord.sort_order, TaskRecord.id).all())
        deps = session.query(DependencyRecord).filter_by(schedule_id=schedule_id).all()
        milestones = (session.query(MilestoneRecord).filter_by(schedule_id=schedule_id)
                      .order_by(MilestoneRecord.target_date, MilestoneRecord.id).all())
        links = {}
        if milestones:
            rows = (session.query(MilestoneTaskRecord)
                    .filter(MilestoneTaskRecord.milestone_id.in_([m.id for m in milestones]))
                    .all())
            for row in rows:
                links.setdefault(row.milestone_id, []).append(row.task_id)

        return ScheduleSnapshot(
            schedule_id=schedule_id,
            tasks=[_task_from_record(r) for r in tasks],
            dependencies=[
                Dependency(id=r.id, schedule_id=r.schedule_id, task_id=r.task_id,
                           depends_on_task_id=r.depends_on_task_id,
                           dependency_type=r.dependency_type, lag_days=r.lag_days)
                for r in deps
            ],
            milestones=[
                Milestone(id=m.id, schedule_id=m.schedule_id, name=m.name,
                          target_date=m.target_date, status=m.status,
                          task_ids=sorted(links.get(m.id, [])))
                for m in milestones
            ],
        )


def _add_records(session, tasks: List[Task], dependencies: List[Dependency]):
    session.add_all([_task_record(t) for t in tasks])
    session.flush()  # Tasks before the edges that reference them
    session.add_all([_dependency_record(d) for d in dependencies])


def add_records(tasks: List[Task], dependencies: List[Dependency]):
    with session_scope("add_records") as session:
        _add_records(session, tasks, dependencies)
    log.info(f"DB: Saved {len(tasks)} task(s) and {len(dependencies)} dependency(ies).")


def add_dependency(dep: Dependency):
    with session_scope("add_dependency") as session:
        session.add(_dependency_record(dep))


def delete_dependency(schedule_id: str, dependency_id: str) -> bool:
    with session_scope("delete_dependency") as session:
        deleted = (session.query(DependencyRecord)
                   .filter_by(schedule_id=schedule_id, id=dependency_id)
                   .delete(synchronize_session=False))
        return deleted > 0


def delete_task(schedule_id: str, task_id: str):
    """Delete a task together with its dependencies and milestone links."""
    with session_scope("delete_task") as session:
        record = session.query(TaskRecord).filter_by(schedule_id=schedule_id, id=task_id).first()
        if record is None:
            raise TaskNotFoundError(task_id)
        (session.query(DependencyRecord)
         .filter(or_(DependencyRecord.task_id == task_id,
                     DependencyRecord.depends_on_task_id == task_id))
         .delete(synchronize_session=False))
        session.query(MilestoneTaskRecord).filter_by(task_id=task_id).delete(synchronize_session=False)
        session.delete(record)


def _update_window(session, schedule_id: str, task_id: str, start, end) -> TaskRecord:
    record = session.query(TaskRecord).filter_by(schedule_id=schedule_id, id=task_id).first()
    if record is None:
        raise TaskNotFoundError(task_id)
    record.start_date = start
    record.end_date = end
    record.duration_days = (end - start).days + 1
    return record


def save_windows(schedule_id: str, windows: List[TaskWindow]):
    with session_scope("save_windows") as session:
        for w in windows:
            _update_window(session, schedule_id, w.task_id, w.new_start, w.new_end)
    log.info(f"DB: Updated dates for {len(windows)} task(s).")


def _apply_cpm_result(session, schedule_id: str, result: CPMResult):
    for item in result.tasks:
        record = _update_window(session, schedule_id, item.task_id,
                                item.start_date, item.end_date)
        record.is_critical = item.is_critical


def save_cpm_result(schedule_id: str, result: CPMResult):
    with session_scope("save_cpm_result") as session:
        _apply_cpm_result(session, schedule_id, result)


def save_template_instantiation(schedule_id: str, tasks: List[Task],
                                dependencies: List[Dependency], result: CPMResult):
    """New template records and the rescheduled windows, in one transaction."""
    with session_scope("save_template_instantiation") as session:
        _add_records(session, tasks, dependencies)
        session.flush()
        _apply_cpm_result(session, schedule_id, result)
    log.info(f"DB: Saved {len(tasks)} template task(s) and rescheduled {len(result.tasks)}.")


def update_task_fields(schedule_id: str, task_id: str, fields: dict):
    """Write name/status/progress changes for one task."""
    with session_scope("update_task_fields") as session:
        record = session.query(TaskRecord).filter_by(schedule_id=schedule_id, id=task_id).first()
        if record is None:
            raise TaskNotFoundError(task_id)
        for key, value in fields.items():
            setattr(record, key, value.value if isinstance(value, Enum) else value)


def update_dependency(dep: Dependency, windows: List[TaskWindow]):
    """Store a changed edge together with the windows its cascade moved."""
    with session_scope("update_dependency") as session:
        record = (session.query(DependencyRecord)
                  .filter_by(schedule_id=dep.schedule_id, id=dep.id).first())
        if record is None:
            raise DependencyNotFoundError(dep.id)
        record.dependency_type = dep.dependency_type.value
        record.lag_days = dep.lag_days
        for w in windows:
            _update_window(session, dep.schedule_id, w.task_id, w.new_start, w.new_end)
    log.info(f"DB: Updated dependency {dep.id}; moved {len(windows)} task(s).")


def add_milestone(milestone: Milestone):
    with session_scope("add_milestone") as session:
        session.add(MilestoneRecord(
            id=milestone.id, schedule_id=milestone.schedule_id, name=milestone.name,
            target_date=milestone.target_date, status=milestone.status.value,
        ))
        session.flush()
        session.add_all([MilestoneTaskRecord(milestone_id=milestone.id, task_id=task_id)
                         for task_id in set(milestone.task_ids)])


def save_milestone_statuses(schedule_id: str, evaluations: List[MilestoneEvaluation]):
    with session_scope("save_milestone_statuses") as session:
        for e in evaluations:
            record = (session.query(MilestoneRecord)
                      .filter_by(schedule_id=schedule_id, id=e.milestone_id).first())
            if record is not None:
                record.status = e.new_status.value
