from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from app.core.errors import (
    ExecutionNotFoundError,
    InvalidScheduleError,
    InvalidTransitionError,
    JobExistsError,
    JobNotFoundError,
    QueueUnavailableError,
)
from app.models.job_execution import JobExecution
from app.models.scheduled_job import ScheduledJob
from app.services.execution_tracker import TargetLists, millis_to_iso, parse_json_dict
from app.services.runtime import SchedulerRuntime
from app.services.scheduler import JobOverview, Scheduler

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_runtime(request: Request) -> SchedulerRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Scheduler runtime not started")
    return runtime


def get_scheduler(runtime: SchedulerRuntime = Depends(get_runtime)) -> Scheduler:
    return runtime.scheduler


def _job_dict(job: ScheduledJob, *, registered: bool | None = None) -> dict:
    out = {
        "id": job.id,
        "name": job.name,
        "job_key": job.job_key,
        "display_name": job.display_name,
        "description": job.description,
        "schedule": job.schedule,
        "timezone": job.timezone,
        "enabled": job.enabled,
        "config": parse_json_dict(job.config_json),
        "last_run_at": millis_to_iso(job.last_run_at),
        "next_run_at": millis_to_iso(job.next_run_at),
        "created_at": millis_to_iso(job.created_at),
        "updated_at": millis_to_iso(job.updated_at),
    }
    if registered is not None:
        out["registered"] = registered
        out["active"] = bool(job.enabled) and registered
    return out


def _overview_dict(o: JobOverview) -> dict:
    return _job_dict(o.record, registered=o.registered)


def _execution_dict(e: JobExecution, job: ScheduledJob | None = None) -> dict:
    out = {
        "id": e.id,
        "job_id": e.job_id,
        "status": e.status,
        "started_at": millis_to_iso(e.started_at),
        "completed_at": millis_to_iso(e.completed_at),
        "duration_ms": e.duration_ms,
        "users_affected": e.users_affected,
        "result": parse_json_dict(e.result_json) or None,
        "error": e.error,
        "metadata": parse_json_dict(e.metadata_json) or None,
    }
    if job is not None:
        out["job_name"] = job.name
        out["job_display_name"] = job.display_name
    return out


def _targets_dict(t: TargetLists) -> dict:
    return {
        "include_user_ids": t.include_user_ids,
        "exclude_user_ids": t.exclude_user_ids,
        "pack_ids": t.pack_ids,
    }


class JobCreateRequest(BaseModel):
    name: str
    job_key: str
    display_name: str
    description: str | None = None
    schedule: str | None = None
    timezone: str | None = None
    enabled: bool = True
    config: dict = {}


class JobUpdateRequest(BaseModel):
    schedule: str | None = None
    timezone: str | None = None
    enabled: bool | None = None
    config: dict | None = None


class JobTargetsRequest(BaseModel):
    include_user_ids: list[str] = []
    exclude_user_ids: list[str] = []
    pack_ids: list[str] = []


class ExecutionStatusRequest(BaseModel):
    status: str
    summary: str | None = None
    users_affected: int | None = None
    error: str | None = None


@router.get("")
def list_jobs(scheduler: Scheduler = Depends(get_scheduler)):
    jobs = [_overview_dict(o) for o in scheduler.list_jobs()]
    return {"ok": True, "total": len(jobs), "jobs": jobs}


@router.post("")
def create_job(req: JobCreateRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        job = scheduler.create_job(
            name=req.name,
            job_key=req.job_key,
            display_name=req.display_name,
            description=req.description,
            schedule=req.schedule,
            timezone=req.timezone,
            enabled=req.enabled,
            config=req.config,
        )
    except JobNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except JobExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "job": _job_dict(job, registered=True)}


@router.get("/executions")
def list_executions(
    scheduler: Scheduler = Depends(get_scheduler),
    job_name: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    try:
        rows = scheduler.list_executions(job_name, limit=limit, offset=offset)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "ok": True,
        "limit": limit,
        "offset": offset,
        "executions": [_execution_dict(e, j) for e, j in rows],
    }


@router.patch("/executions/{execution_id}")
def update_execution_status(
    execution_id: str,
    req: ExecutionStatusRequest,
    scheduler: Scheduler = Depends(get_scheduler),
):
    try:
        execution = scheduler.update_execution_status(
            execution_id,
            req.status,
            summary=req.summary,
            users_affected=req.users_affected,
            error=req.error,
        )
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "execution": _execution_dict(execution)}


@router.get("/{name}")
def get_job(name: str, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        overview = scheduler.get_job(name)
        targets = scheduler.get_job_targets(name)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "job": _overview_dict(overview), "targets": _targets_dict(targets)}


@router.patch("/{name}")
def update_job(name: str, req: JobUpdateRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        job = scheduler.update_job_config(
            name,
            schedule=req.schedule,
            timezone=req.timezone,
            enabled=req.enabled,
            config=req.config,
        )
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "job": _job_dict(job)}


@router.delete("/{name}")
def delete_job(name: str, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        scheduler.delete_job(name)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True}


@router.get("/{name}/executions")
def list_job_executions(
    name: str,
    scheduler: Scheduler = Depends(get_scheduler),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    try:
        rows = scheduler.list_executions(name, limit=limit, offset=offset)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "executions": [_execution_dict(e, j) for e, j in rows]}


@router.get("/{name}/stats")
def job_stats(name: str, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        stats = scheduler.job_stats(name)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "ok": True,
        "stats": {
            "total_executions": stats.total_executions,
            "successful_executions": stats.successful_executions,
            "failed_executions": stats.failed_executions,
            "average_duration_ms": stats.average_duration_ms,
            "last_execution": _execution_dict(stats.last_execution) if stats.last_execution else None,
        },
    }


@router.post("/{name}/trigger")
def trigger_job(name: str, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        execution = scheduler.trigger_job(name)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except QueueUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"ok": True, "execution": _execution_dict(execution)}


@router.get("/{name}/targets")
def get_job_targets(name: str, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        targets = scheduler.get_job_targets(name)
        resolved = scheduler.preview_targets(name)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "targets": _targets_dict(targets), "final_user_ids": resolved.final_user_ids}


@router.put("/{name}/targets")
def set_job_targets(name: str, req: JobTargetsRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        targets = scheduler.set_job_targets(
            name,
            include_user_ids=req.include_user_ids,
            exclude_user_ids=req.exclude_user_ids,
            pack_ids=req.pack_ids,
        )
        resolved = scheduler.preview_targets(name)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "targets": _targets_dict(targets), "final_user_ids": resolved.final_user_ids}
