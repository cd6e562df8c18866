"""Refresh engine control: statistics and manual triggers."""
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_container
from schemas import JobCounts, JobHandleOut
from services.container import ServiceContainer

router = APIRouter(tags=["jobs"])


@router.get("/stats", response_model=Dict[str, JobCounts])
async def job_stats(c: ServiceContainer = Depends(get_container)):
    return c.engine.stats()


@router.post("/{name}/trigger", response_model=JobHandleOut, status_code=202)
async def trigger_job(name: str, c: ServiceContainer = Depends(get_container)):
    """Queue a manual run; it executes after whatever the queue is already running"""
    if name not in c.engine.queues:
        raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
    handle = c.engine.trigger(name)
    return JobHandleOut(id=handle.id, name=handle.name)


@router.get("/{name}/recent")
async def recent_jobs(name: str, c: ServiceContainer = Depends(get_container)):
    if name not in c.engine.queues:
        raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
    return c.engine.recent(name)
