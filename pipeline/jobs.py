from __future__ import annotations

from datetime import UTC, datetime
import logging
from uuid import UUID

from rq.job import Job as RQJob

from db.models import Job
from db.session import SessionLocal
from generation.service import RunCancelled, TaskBlocked, run_all_tasks, run_task

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("succeeded", "failed")


def _update_job(
    session,
    job_id: UUID | str,
    status: str,
    result: dict | None = None,
    error: dict | None = None,
) -> None:
    job = session.get(Job, job_id)
    if job is None:
        raise RuntimeError(f"Job not found: {job_id}")
    now = datetime.now(UTC)
    job.status = status
    if status == "running":
        job.started_at = now
    if status in TERMINAL_STATUSES:
        job.finished_at = now
    if result is not None:
        job.result = result
    if error is not None:
        job.error_payload = error
    job.updated_at = now
    session.add(job)


def rq_on_failure(job: RQJob, exc_type, exc_value, traceback) -> None:  # type: ignore[no-untyped-def]
    session = SessionLocal()
    try:
        job_id = job.args[0] if job.args else None
        if job_id is None:
            return
        _update_job(session, job_id, "failed", error={"message": str(exc_value), "type": exc_type.__name__})
        session.commit()
    finally:
        session.close()


def rq_on_success(job: RQJob, connection, result, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
    session = SessionLocal()
    try:
        job_id = job.args[0] if job.args else None
        if job_id is None:
            return
        row = session.get(Job, job_id)
        # Blocked or cancelled runs return normally but already closed the row.
        if row is not None and row.status in TERMINAL_STATUSES:
            return
        _update_job(session, job_id, "succeeded")
        session.commit()
    finally:
        session.close()


def generate_task_job(job_id: UUID | str, srt_asset_id: UUID | str, task: str) -> dict:
    session = SessionLocal()
    try:
        _update_job(session, job_id, "running")
        session.commit()

        try:
            asset = run_task(session, srt_asset_id, task)
        except TaskBlocked as exc:
            logger.warning("generation blocked job=%s task=%s", job_id, task)
            result = {"task": task, "status": "blocked", "variants": len(exc.diagnostics.variants)}
            _update_job(session, job_id, "succeeded", result=result)
            session.commit()
            return result
        except RunCancelled as exc:
            session.rollback()
            logger.warning("generation cancelled job=%s task=%s", job_id, task)
            _update_job(session, job_id, "failed", error={"message": str(exc), "code": "run_cancelled"})
            session.commit()
            return {"task": task, "status": "cancelled"}

        result = {
            "task": task,
            "status": "completed",
            "asset_id": str(asset.id),
            "version": asset.version,
            "asset_status": asset.status,
        }
        _update_job(session, job_id, "succeeded", result=result)
        session.commit()
        return result
    except Exception as exc:
        session.rollback()
        _update_job(session, job_id, "failed", error={"message": str(exc)})
        session.commit()
        raise
    finally:
        session.close()


def generate_all_job(job_id: UUID | str, srt_asset_id: UUID | str) -> dict:
    session = SessionLocal()
    try:
        _update_job(session, job_id, "running")
        session.commit()

        tasks = run_all_tasks(session, srt_asset_id, session_factory=SessionLocal)
        result = {"tasks": tasks}
        _update_job(session, job_id, "succeeded", result=result)
        session.commit()
        return result
    except Exception as exc:
        session.rollback()
        _update_job(session, job_id, "failed", error={"message": str(exc)})
        session.commit()
        raise
    finally:
        session.close()
