#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
from collections import Counter

from sqlalchemy import desc, select

from db.models import Job
from db.session import SessionLocal


def _duration_s(job: Job) -> str:
    if job.started_at is None or job.finished_at is None:
        return "-"
    return f"{(job.finished_at - job.started_at).total_seconds():.1f}"


def _outcome(job: Job) -> str:
    result = job.result or {}
    error = job.error_payload or {}
    return result.get("status") or error.get("code") or ("error" if error else "-")


def main() -> None:
    parser = ArgumentParser(description="Inspect generation jobs per task")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--summary", action="store_true", help="Count jobs per task, status and outcome")
    parser.add_argument("--failed", action="store_true", help="Only failed jobs, with their error payload")
    parser.add_argument("--srt-asset-id", default=None)
    parser.add_argument("--task", default=None)
    args = parser.parse_args()

    session = SessionLocal()
    try:
        stmt = select(Job)
        if args.failed:
            stmt = stmt.where(Job.status == "failed")
        if args.srt_asset_id:
            stmt = stmt.where(Job.srt_asset_id == args.srt_asset_id)
        stmt = stmt.order_by(desc(Job.created_at))
        if not args.summary:
            stmt = stmt.limit(args.limit)
        jobs = [
            job
            for job in session.execute(stmt).scalars().all()
            if args.task is None or (job.payload or {}).get("task") == args.task
        ]

        if args.summary:
            counts = Counter(((job.payload or {}).get("task", job.job_type), job.status, _outcome(job)) for job in jobs)
            for (task, status, outcome), count in sorted(counts.items()):
                print(f"[summary] task={task} status={status} outcome={outcome}: {count}")
            return

        for job in jobs:
            payload = job.payload or {}
            print(
                f"[job] id={job.id} task={payload.get('task', job.job_type)} status={job.status} "
                f"outcome={_outcome(job)} duration_s={_duration_s(job)} parent={job.parent_job_id or '-'} "
                f"rq_id={payload.get('rq_id')}"
            )
            if args.failed and job.error_payload:
                print(f"[job] error={job.error_payload}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
