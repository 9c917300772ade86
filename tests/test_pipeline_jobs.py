from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

import pytest

import pipeline.jobs as jobs_module
import pipeline.queue as queue_module
from db.models import Job, SrtAsset
from generation.service import RunCancelled, TaskBlocked
from generation.types import GenerationVariant, TaskDiagnostics


class _FakeSession:
    def __init__(self, jobs: list[Job] | None = None, srt_assets: list | None = None) -> None:
        self.jobs = {job.id: job for job in jobs or []}
        self.srt_assets = {asset.id: asset for asset in srt_assets or []}
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def get(self, model, key):
        if model is Job:
            return self.jobs.get(key)
        if model is SrtAsset:
            return self.srt_assets.get(key)
        return None

    def add(self, obj):
        if isinstance(obj, Job):
            if obj.id is None:
                obj.id = uuid4()
            self.jobs[obj.id] = obj

    def refresh(self, obj):
        return None

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


class _FakeQueue:
    def __init__(self) -> None:
        self.calls: list[tuple[tuple, dict]] = []

    def enqueue(self, func, *args, **kwargs):
        handle = SimpleNamespace(id=f"rq-{len(self.calls) + 1}", func=func)
        self.calls.append((args, kwargs))
        return handle


def _job(status: str = "queued") -> Job:
    return Job(id=uuid4(), job_type="generate_task", status=status, payload={})


def _install_session(monkeypatch, module, session: _FakeSession) -> None:
    monkeypatch.setattr(module, "SessionLocal", lambda: session)


def test_generate_task_job_records_minted_asset(monkeypatch) -> None:
    job = _job()
    session = _FakeSession(jobs=[job])
    _install_session(monkeypatch, jobs_module, session)
    asset = SimpleNamespace(id=uuid4(), version=3, status="ready")
    monkeypatch.setattr(jobs_module, "run_task", lambda _session, srt_asset_id, task: asset)

    result = jobs_module.generate_task_job(job.id, uuid4(), "linkedin")

    assert result["status"] == "completed"
    assert result["version"] == 3
    assert result["asset_status"] == "ready"
    assert job.status == "succeeded"
    assert job.started_at is not None
    assert job.finished_at is not None
    assert job.result == result
    assert session.closed is True


def test_blocked_task_finishes_job_with_blocked_result(monkeypatch) -> None:
    job = _job()
    session = _FakeSession(jobs=[job])
    _install_session(monkeypatch, jobs_module, session)
    diagnostics = TaskDiagnostics(
        "reels",
        "blocked",
        "openai",
        "gpt-5-mini",
        7.2,
        7.4,
        variants=[GenerationVariant(index=1, status="schema_invalid")],
    )

    def _run_task(*args, **kwargs):
        raise TaskBlocked("reels", diagnostics)

    monkeypatch.setattr(jobs_module, "run_task", _run_task)

    result = jobs_module.generate_task_job(job.id, uuid4(), "reels")

    assert result == {"task": "reels", "status": "blocked", "variants": 1}
    assert job.status == "succeeded"
    assert job.error_payload is None


def test_cancelled_task_fails_job_with_code(monkeypatch) -> None:
    job = _job()
    session = _FakeSession(jobs=[job])
    _install_session(monkeypatch, jobs_module, session)

    def _run_task(*args, **kwargs):
        raise RunCancelled("x run cancelled")

    monkeypatch.setattr(jobs_module, "run_task", _run_task)

    result = jobs_module.generate_task_job(job.id, uuid4(), "x")

    assert result["status"] == "cancelled"
    assert job.status == "failed"
    assert job.error_payload["code"] == "run_cancelled"
    assert session.rollbacks == 1


def test_unexpected_error_fails_job_and_propagates(monkeypatch) -> None:
    job = _job()
    session = _FakeSession(jobs=[job])
    _install_session(monkeypatch, jobs_module, session)

    def _run_task(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(jobs_module, "run_task", _run_task)

    with pytest.raises(RuntimeError):
        jobs_module.generate_task_job(job.id, uuid4(), "newsletter")

    assert job.status == "failed"
    assert job.error_payload == {"message": "database went away"}
    assert session.closed is True


def test_missing_job_row_raises(monkeypatch) -> None:
    _install_session(monkeypatch, jobs_module, _FakeSession())

    with pytest.raises(RuntimeError):
        jobs_module.generate_task_job(uuid4(), uuid4(), "x")


def test_rq_on_success_keeps_terminal_rows(monkeypatch) -> None:
    job = _job(status="failed")
    job.error_payload = {"code": "run_cancelled"}
    session = _FakeSession(jobs=[job])
    _install_session(monkeypatch, jobs_module, session)

    jobs_module.rq_on_success(SimpleNamespace(args=(job.id,)), None, {"status": "cancelled"})

    assert job.status == "failed"
    assert session.commits == 0


def test_rq_on_failure_marks_row_failed(monkeypatch) -> None:
    job = _job(status="running")
    session = _FakeSession(jobs=[job])
    _install_session(monkeypatch, jobs_module, session)

    jobs_module.rq_on_failure(SimpleNamespace(args=(job.id,)), TimeoutError, TimeoutError("job timeout"), None)

    assert job.status == "failed"
    assert job.error_payload == {"message": "job timeout", "type": "TimeoutError"}


def test_enqueue_generation_chains_downstream_jobs_on_analysis(monkeypatch) -> None:
    srt_asset = SimpleNamespace(id=uuid4())
    session = _FakeSession(srt_assets=[srt_asset])
    queue = _FakeQueue()
    _install_session(monkeypatch, queue_module, session)
    monkeypatch.setattr(queue_module, "get_queue", lambda name="default": queue)
    monkeypatch.delenv("RQ_JOB_TIMEOUT", raising=False)

    result = queue_module.enqueue_generation(srt_asset.id, ["x", "analysis", "reels"])

    assert list(result["jobs"]) == ["analysis", "reels", "x"]
    analysis_args, analysis_kwargs = queue.calls[0]
    assert analysis_args[2] == "analysis"
    assert analysis_kwargs["job_timeout"] == 900
    analysis_job_id = result["jobs"]["analysis"]["job_id"]
    for args, kwargs in queue.calls[1:]:
        assert kwargs["depends_on"].id == "rq-1"
        assert session.jobs[args[0]].parent_job_id == analysis_job_id
    assert session.jobs[analysis_job_id].payload["rq_id"] == "rq-1"
    assert session.closed is True


def test_enqueue_generation_without_analysis_has_no_dependency(monkeypatch) -> None:
    srt_asset = SimpleNamespace(id=uuid4())
    queue = _FakeQueue()
    _install_session(monkeypatch, queue_module, _FakeSession(srt_assets=[srt_asset]))
    monkeypatch.setattr(queue_module, "get_queue", lambda name="default": queue)

    result = queue_module.enqueue_generation(srt_asset.id, ["linkedin"])

    assert list(result["jobs"]) == ["linkedin"]
    assert queue.calls[0][1]["depends_on"] is None


def test_enqueue_generation_rejects_unknown_tasks_and_assets(monkeypatch) -> None:
    _install_session(monkeypatch, queue_module, _FakeSession())
    monkeypatch.setattr(queue_module, "get_queue", lambda name="default": _FakeQueue())

    with pytest.raises(ValueError):
        queue_module.enqueue_generation(uuid4(), ["podcast"])
    with pytest.raises(queue_module.AssetNotFound):
        queue_module.enqueue_generation(uuid4(), ["x"])
