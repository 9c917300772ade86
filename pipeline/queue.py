import os
from datetime import UTC, datetime
from uuid import UUID

from redis import Redis
from rq import Queue

from db.models import Job, SrtAsset
from db.session import SessionLocal
from generation.service import DOWNSTREAM_TASKS, AssetNotFound
from llm.routing import TASKS
from pipeline.jobs import (
    generate_all_job,
    generate_task_job,
    rq_on_failure,
    rq_on_success,
)


def _redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


def _timeout_seconds(kind: str) -> int:
    if kind == "generate_all":
        return int(os.getenv("RQ_RUN_ALL_TIMEOUT", "1800"))
    return int(os.getenv("RQ_JOB_TIMEOUT", "900"))


def get_redis() -> Redis:
    return Redis.from_url(_redis_url())


def get_queue(name: str = "default") -> Queue:
    return Queue(name, connection=get_redis())


def _create_job(session, job_type: str, srt_asset_id: UUID | str, payload: dict, parent_job_id=None) -> Job:
    job = Job(
        job_type=job_type,
        status="queued",
        srt_asset_id=srt_asset_id,
        parent_job_id=parent_job_id,
        payload=payload,
        queued_at=datetime.now(UTC),
    )
    session.add(job)
    session.commit()
    session.refresh(job)
    return job


def _remember_rq_id(session, job: Job, rq_id: str) -> None:
    payload = dict(job.payload or {})
    payload["rq_id"] = rq_id
    job.payload = payload
    session.commit()


def enqueue_generation(srt_asset_id: UUID | str, tasks: list[str] | None = None) -> dict:
    """Queue one job per task; downstream tasks wait for the analysis job when it is queued too."""
    selected = [task for task in TASKS if task in (tasks or TASKS)]
    unknown = sorted(set(tasks or []) - set(TASKS))
    if unknown:
        raise ValueError(f"unknown tasks: {', '.join(unknown)}")
    session = SessionLocal()
    try:
        if session.get(SrtAsset, srt_asset_id) is None:
            raise AssetNotFound(f"srt asset not found: {srt_asset_id}")

        queue = get_queue()
        jobs: dict[str, dict] = {}
        rq_analysis = None
        analysis_job_id = None
        if "analysis" in selected:
            analysis_job = _create_job(
                session, "generate_task", srt_asset_id, {"srt_asset_id": str(srt_asset_id), "task": "analysis"}
            )
            rq_analysis = queue.enqueue(
                generate_task_job,
                analysis_job.id,
                srt_asset_id,
                "analysis",
                job_timeout=_timeout_seconds("generate_task"),
                on_failure=rq_on_failure,
                on_success=rq_on_success,
            )
            _remember_rq_id(session, analysis_job, rq_analysis.id)
            analysis_job_id = analysis_job.id
            jobs["analysis"] = {"job_id": analysis_job.id, "rq_id": rq_analysis.id}

        for task in DOWNSTREAM_TASKS:
            if task not in selected:
                continue
            task_job = _create_job(
                session,
                "generate_task",
                srt_asset_id,
                {"srt_asset_id": str(srt_asset_id), "task": task},
                parent_job_id=analysis_job_id,
            )
            rq_task = queue.enqueue(
                generate_task_job,
                task_job.id,
                srt_asset_id,
                task,
                depends_on=rq_analysis,
                job_timeout=_timeout_seconds("generate_task"),
                on_failure=rq_on_failure,
                on_success=rq_on_success,
            )
            _remember_rq_id(session, task_job, rq_task.id)
            jobs[task] = {"job_id": task_job.id, "rq_id": rq_task.id}

        return {"srt_asset_id": srt_asset_id, "jobs": jobs}
    finally:
        session.close()


def enqueue_run_all(srt_asset_id: UUID | str) -> dict:
    """Single job running every task in-process through ``run_all_tasks``."""
    session = SessionLocal()
    try:
        if session.get(SrtAsset, srt_asset_id) is None:
            raise AssetNotFound(f"srt asset not found: {srt_asset_id}")
        job = _create_job(session, "generate_all", srt_asset_id, {"srt_asset_id": str(srt_asset_id)})
        rq_job = get_queue().enqueue(
            generate_all_job,
            job.id,
            srt_asset_id,
            job_timeout=_timeout_seconds("generate_all"),
            on_failure=rq_on_failure,
            on_success=rq_on_success,
        )
        _remember_rq_id(session, job, rq_job.id)
        return {"srt_asset_id": srt_asset_id, "job_id": job.id, "rq_id": rq_job.id}
    finally:
        session.close()
