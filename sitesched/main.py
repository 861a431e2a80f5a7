from datetime import date

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool

from .config import load_settings
from .database import init_db
from .errors import (
    CycleError, DependencyNotFoundError, DuplicateDependencyError, PersistenceError,
    SchedulingError, TaskNotFoundError,
)
from .logs import get_logger, setup_logging
from .models import (
    DateChangeRequest, DependencyCreate, DependencyUpdate, MilestoneCreate, RecomputeRequest,
    TaskCreate, TaskUpdate,
)
from .services import ScheduleService
from .templates import parse_template_workbook

log = get_logger("api")

app = FastAPI(title="sitesched")
service = ScheduleService()


@app.on_event("startup")
def startup_event():
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_file)
    init_db(settings.database_url)


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, CycleError):
        return HTTPException(status_code=400, detail={"message": str(e), "cycle": e.cycle})
    if isinstance(e, DuplicateDependencyError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (TaskNotFoundError, DependencyNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PersistenceError):
        log.error(f"Persistence failure: {e}")
        return HTTPException(status_code=500, detail=str(e))
    if isinstance(e, SchedulingError):
        return HTTPException(status_code=400, detail=str(e))
    # pydantic ValidationError is a ValueError
    return HTTPException(status_code=422, detail=str(e))


@app.get("/schedules/{schedule_id}")
def get_schedule(schedule_id: str):
    try:
        return service.load_snapshot(schedule_id)
    except SchedulingError as e:
        raise _http_error(e) from e


@app.post("/schedules/{schedule_id}/tasks", status_code=201)
def create_task(schedule_id: str, request: TaskCreate):
    try:
        return service.create_task(schedule_id, request)
    except (SchedulingError, ValueError) as e:
        raise _http_error(e) from e


@app.put("/schedules/{schedule_id}/tasks/{task_id}")
def update_task(schedule_id: str, task_id: str, request: TaskUpdate):
    try:
        task, milestones = service.update_task(schedule_id, task_id, request)
    except SchedulingError as e:
        raise _http_error(e) from e
    return {"task": task, "milestones": milestones}


@app.delete("/schedules/{schedule_id}/tasks/{task_id}")
def delete_task(schedule_id: str, task_id: str):
    try:
        removed = service.remove_task(schedule_id, task_id)
    except SchedulingError as e:
        raise _http_error(e) from e
    return {"deleted": [task_id], "dependencies": removed}


@app.put("/schedules/{schedule_id}/tasks/{task_id}/dates")
def update_task_dates(schedule_id: str, task_id: str, request: DateChangeRequest):
    try:
        result, milestones = service.apply_date_change(
            schedule_id, task_id, request.new_start, request.new_end)
    except SchedulingError as e:
        raise _http_error(e) from e
    return {"cascade": result, "milestones": milestones}


@app.post("/schedules/{schedule_id}/dependencies", status_code=201)
def create_dependency(schedule_id: str, request: DependencyCreate):
    try:
        return service.insert_dependency(schedule_id, request)
    except SchedulingError as e:
        raise _http_error(e) from e


@app.put("/schedules/{schedule_id}/dependencies/{dependency_id}")
def update_dependency(schedule_id: str, dependency_id: str, request: DependencyUpdate):
    try:
        dep, result, milestones = service.update_dependency(schedule_id, dependency_id, request)
    except SchedulingError as e:
        raise _http_error(e) from e
    return {"dependency": dep, "cascade": result, "milestones": milestones}


@app.delete("/schedules/{schedule_id}/dependencies/{dependency_id}")
def delete_dependency(schedule_id: str, dependency_id: str):
    try:
        deleted = service.remove_dependency(schedule_id, dependency_id)
    except SchedulingError as e:
        raise _http_error(e) from e
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Dependency {dependency_id} not found")
    return {"deleted": [dependency_id]}


@app.post("/schedules/{schedule_id}/auto-schedule")
def auto_schedule(schedule_id: str, request: RecomputeRequest):
    try:
        result, milestones = service.recompute_schedule(schedule_id, request.project_start)
    except SchedulingError as e:
        raise _http_error(e) from e
    return {"schedule": result, "milestones": milestones}


@app.post("/schedules/{schedule_id}/milestones", status_code=201)
def create_milestone(schedule_id: str, request: MilestoneCreate):
    try:
        return service.create_milestone(schedule_id, request)
    except SchedulingError as e:
        raise _http_error(e) from e


@app.post("/schedules/{schedule_id}/milestones/evaluate")
def evaluate_milestones(schedule_id: str):
    try:
        return {"milestones": service.evaluate_milestones(schedule_id)}
    except SchedulingError as e:
        raise _http_error(e) from e


@app.post("/schedules/{schedule_id}/template")
async def upload_template(schedule_id: str, project_start: date, sequential: bool = False,
                          file: UploadFile = File(...)):
    if not file.filename or not file.filename.endswith('.xlsx'):
        raise HTTPException(status_code=400, detail="Invalid file format")

    contents = await file.read()
    try:
        rows = await run_in_threadpool(parse_template_workbook, contents)
        result = await run_in_threadpool(
            service.instantiate_template, schedule_id, rows, project_start,
            load_settings().default_duration_days, sequential,
        )
    except (SchedulingError, ValueError) as e:
        raise _http_error(e) from e
    return {"created": len(rows), "schedule": result}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
