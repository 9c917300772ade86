#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser

from llm.routing import TASKS
from pipeline.queue import enqueue_generation, enqueue_run_all


def main() -> None:
    parser = ArgumentParser(description="Enqueue content generation for an SRT asset")
    parser.add_argument("--srt-asset-id", required=True)
    parser.add_argument(
        "--task",
        action="append",
        choices=TASKS,
        help="Task to generate (repeatable); defaults to every task",
    )
    parser.add_argument(
        "--single-job",
        action="store_true",
        help="Run every task inside one generate_all job instead of one job per task",
    )
    args = parser.parse_args()

    if args.single_job:
        result = enqueue_run_all(args.srt_asset_id)
        print("[enqueue] srt_asset_id:", result["srt_asset_id"])
        print("[enqueue] job_id:", result["job_id"], "rq_id:", result["rq_id"])
        return

    result = enqueue_generation(args.srt_asset_id, args.task)
    print("[enqueue] srt_asset_id:", result["srt_asset_id"])
    for task, job in result["jobs"].items():
        print(f"[enqueue] task={task} job_id={job['job_id']} rq_id={job['rq_id']}")


if __name__ == "__main__":
    main()
