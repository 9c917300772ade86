#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import logging
import os

from rq import SimpleWorker, Worker

from db.session import SessionLocal, engine
from generation.preferences import resolve_route
from llm.routing import TASKS, is_provider_configured
from pipeline.queue import get_queue, get_redis

logger = logging.getLogger("generation.worker")


def _log_routes() -> None:
    session = SessionLocal()
    try:
        routes = {
            task: (resolve_route(session, task, "generation"), resolve_route(session, task, "judge")) for task in TASKS
        }
    finally:
        session.close()
    for task, (generation, judge) in routes.items():
        configured = generation.provider == "heuristic" or is_provider_configured(generation.provider)
        logger.info(
            "route task=%s generation=%s/%s judge=%s/%s credentials=%s",
            task,
            generation.provider,
            generation.model,
            judge.provider,
            judge.model,
            "ok" if configured else "missing",
        )
        if not configured:
            logger.warning("task=%s will fall back to heuristic generation (auth_missing)", task)


def main() -> None:
    parser = ArgumentParser(description="Run the RQ worker that executes generation jobs")
    parser.add_argument("--queue", action="append", help="Queue to listen on (repeatable); defaults to 'default'")
    parser.add_argument("--burst", action="store_true", help="Drain queued generation jobs and exit")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    _log_routes()

    # Forked work horses must not reuse the parent's pooled connections.
    if hasattr(os, "register_at_fork"):
        os.register_at_fork(after_in_child=lambda: engine.dispose())

    queues = [get_queue(name) for name in (args.queue or ["default"])]
    worker_cls = SimpleWorker if os.getenv("RQ_SIMPLE_WORKER", "1") == "1" else Worker
    logger.info("starting %s on queues=%s", worker_cls.__name__, ",".join(queue.name for queue in queues))
    worker = worker_cls(queues, connection=get_redis())
    worker.work(with_scheduler=False, burst=args.burst)


if __name__ == "__main__":
    main()
