from datetime import date
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from fitter.core.config import load_config
from fitter.db.session import SessionLocal
from fitter.services.jobs import PipelineJobs
from fitter.services.scheduler import Scheduler

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_pipeline_jobs() -> PipelineJobs:
    return PipelineJobs(load_config(), SessionLocal)


@router.post("/{job}/run")
def run_job(
    job: Literal["aggregate", "suggestions", "expire"],
    day: Optional[date] = Query(default=None),
    jobs: PipelineJobs = Depends(get_pipeline_jobs),
) -> dict[str, Any]:
    if day is not None and job != "aggregate":
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="day is only valid for aggregate")
    scheduler = Scheduler.from_config(jobs.config, jobs.registry(), clock=jobs.clock)
    kwargs = {"day": day} if day is not None else {}
    result = scheduler.run_once(job, **kwargs)
    if job == "expire":
        return {"job": job, "count": result}
    return result.as_dict()
