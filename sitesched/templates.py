"""Bulk creation of schedule tasks from a template.

Templates come either as ``TemplateRow`` records or as an ``.xlsx``
workbook with a header row naming the columns. Predecessors are referenced
by task name; several predecessors in one cell are ``|``-separated and the
``Lag`` and ``Type`` cells line up with them by position.
"""
import io
import uuid
import zipfile
from collections import defaultdict
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import BaseModel

from .errors import TemplateError
from .logs import get_logger
from .models import Dependency, DependencyType, Task

log = get_logger("templates")

DEFAULT_DURATION_DAYS = 3

HEADER_ALIASES = {
    'task': 'task',
    'name': 'task',
    'predecessor': 'predecessors',
    'predecessors': 'predecessors',
    'triggering task': 'predecessors',
    'duration': 'duration',
    'days': 'duration',
    'lag': 'lag',
    'lag days': 'lag',
    'type': 'type',
    'section': 'section',
    'trade': 'section',
}


class TemplateRow(BaseModel):
    name: str
    duration_days: int = 0  # 0 means "use the default duration"
    predecessors: List[str] = []
    lags: List[int] = []
    dependency_types: List[DependencyType] = []
    section: Optional[str] = None
    sort_order: int = 0


def _split(raw) -> List[str]:
    if raw is None:
        return []
    return [part.strip() for part in str(raw).split('|') if part.strip()]


def _to_int(raw, row_number: int, column: str) -> int:
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        raise TemplateError(f"Row {row_number}: invalid {column} value {raw!r}") from None


def parse_template_workbook(contents: bytes) -> List[TemplateRow]:
    """Read template rows from the active sheet of an .xlsx workbook.

    A row whose only value is a bold cell in column A starts a new section.
    """
    try:
        wb = openpyxl.load_workbook(io.BytesIO(contents), data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise TemplateError(f"Not a readable .xlsx workbook: {e}") from e
    sheet = wb.active

    rows: List[TemplateRow] = []
    col_map: Dict[str, int] = {}
    current_section = None

    for i, row in enumerate(sheet.iter_rows(min_row=1, values_only=False), start=1):
        values = [str(c.value).strip() if c.value is not None else "" for c in row]
        filled = [idx for idx, val in enumerate(values) if val]
        if not filled:
            continue

        lowered = [val.lower() for val in values]
        if not col_map and ('task' in lowered or 'name' in lowered):
            for idx, val in enumerate(lowered):
                key = HEADER_ALIASES.get(val)
                if key and key not in col_map:
                    col_map[key] = idx
            log.debug(f"Template header found on row {i}: {col_map}")
            continue

        cell_a = row[0]
        if filled == [0] and cell_a.font is not None and cell_a.font.b:
            current_section = values[0]
            continue

        if not col_map:
            continue

        def get_value(key):
            idx = col_map.get(key)
            if idx is None or idx >= len(values):
                return ""
            return values[idx]

        name = get_value('task')
        if not name:
            continue

        duration_raw = get_value('duration')
        predecessors = _split(get_value('predecessors'))
        lags = [_to_int(v, i, 'lag') for v in _split(get_value('lag'))]
        try:
            types = [DependencyType.parse(v) for v in _split(get_value('type'))]
        except ValueError:
            raise TemplateError(f"Row {i}: unknown dependency type {get_value('type')!r}") from None

        rows.append(TemplateRow(
            name=name,
            duration_days=_to_int(duration_raw, i, 'duration') if duration_raw else 0,
            predecessors=predecessors,
            lags=lags,
            dependency_types=types,
            section=get_value('section') or current_section,
            sort_order=len(rows) + 1,
        ))

    if not col_map:
        raise TemplateError("No header row with a 'Task' column found")
    log.info(f"Parsed {len(rows)} template rows")
    return rows


class _Builder:
    """Name-based task registry used while instantiating a template."""

    def __init__(self, schedule_id: str, project_start: date, default_duration: int,
                 id_factory: Callable[[], str]):
        self.schedule_id = schedule_id
        self.project_start = project_start
        self.default_duration = default_duration
        self.id_factory = id_factory
        self.tasks: Dict[str, Task] = {}
        self.by_name: Dict[str, List[str]] = defaultdict(list)

    def add(self, name: str, duration_days: int, section: Optional[str], sort_order: int) -> Task:
        task = Task(
            id=self.id_factory(),
            schedule_id=self.schedule_id,
            name=name,
            duration_days=duration_days or self.default_duration,
            start_date=self.project_start,
            section=section,
            sort_order=sort_order,
        )
        self.tasks[task.id] = task
        self.by_name[name].append(task.id)
        return task

    def resolve(self, name: str, section: Optional[str]) -> Optional[str]:
        candidates = list(self.by_name.get(name, []))
        if not candidates:
            for known, ids in self.by_name.items():
                if known.lower() == name.lower():
                    candidates.extend(ids)
                    break
        if not candidates:
            return None
        if section:
            for task_id in candidates:
                if self.tasks[task_id].section == section:
                    return task_id
        return candidates[0]


def instantiate_template(schedule_id: str, rows: List[TemplateRow], project_start: date,
                        default_duration: int = DEFAULT_DURATION_DAYS, sequential: bool = False,
                        id_factory: Optional[Callable[[], str]] = None
                        ) -> Tuple[List[Task], List[Dependency]]:
    """Turn template rows into task and dependency records.

    Every task starts on ``project_start``; the auto-scheduler places them.
    With ``sequential`` set, rows without predecessors are chained
    finish-to-start behind the previous row in sort order.
    """
    id_factory = id_factory or (lambda: str(uuid.uuid4()))
    builder = _Builder(schedule_id, project_start, default_duration, id_factory)
    ordered = sorted(enumerate(rows), key=lambda pair: (pair[1].sort_order, pair[0]))

    row_ids = []
    for position, (_, row) in enumerate(ordered, start=1):
        task = builder.add(row.name, row.duration_days, row.section, row.sort_order or position)
        row_ids.append(task.id)

    dependencies: List[Dependency] = []
    linked = set()

    def link(successor_id, predecessor_id, dependency_type, lag_days):
        if successor_id == predecessor_id:
            raise TemplateError(f"Task {builder.tasks[successor_id].name!r} lists itself as a predecessor")
        if (predecessor_id, successor_id) in linked:
            log.warning(f"Skipping repeated predecessor for {builder.tasks[successor_id].name!r}")
            return
        linked.add((predecessor_id, successor_id))
        dependencies.append(Dependency(
            id=id_factory(),
            schedule_id=schedule_id,
            task_id=successor_id,
            depends_on_task_id=predecessor_id,
            dependency_type=dependency_type,
            lag_days=lag_days,
        ))

    for index, (task_id, (_, row)) in enumerate(zip(row_ids, ordered)):
        if not row.predecessors:
            if sequential and index > 0:
                link(task_id, row_ids[index - 1], DependencyType.FINISH_TO_START, 0)
            continue
        for n, pred_name in enumerate(row.predecessors):
            pred_id = builder.resolve(pred_name, row.section)
            if pred_id is None:
                log.warning(f"Predecessor {pred_name!r} of {row.name!r} not in template; creating it")
                pred_id = builder.add(pred_name, 0, row.section, len(builder.tasks) + 1).id
            lag = row.lags[n] if n < len(row.lags) else 0
            dep_type = (row.dependency_types[n] if n < len(row.dependency_types)
                        else DependencyType.FINISH_TO_START)
            link(task_id, pred_id, dep_type, lag)

    return list(builder.tasks.values()), dependencies
