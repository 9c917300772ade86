from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from uuid import uuid4

import pytest
from fastapi import HTTPException

import api.main as api_main
import pipeline.queue as pipeline_queue
from db.models import GeneratedAsset
from generation.blocks import BlockEditError
from generation.preferences import PreferenceError
from generation.profile import load_profile
from generation.service import AssetNotFound, RunCancelled, TaskBlocked, VariantNotSelectable
from generation.types import TaskDiagnostics
from llm.gateway import ProviderGateway
from llm.routing import AIRoute, load_route
from prompts.catalog import PromptCatalogError


class _FakeSession:
    def __init__(self) -> None:
        self.closed = False

    def close(self):
        self.closed = True


def _asset(task: str = "linkedin", version: int = 2, source: str = "generation") -> GeneratedAsset:
    return GeneratedAsset(
        id=uuid4(),
        srt_asset_id=uuid4(),
        type=task,
        version=version,
        status="pending",
        source=source,
        payload={"hook": "Sua margem some na mesa de negociacao"},
        generation_profile=None,
        created_at=datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
    )


def _install_session(monkeypatch) -> _FakeSession:
    session = _FakeSession()
    monkeypatch.setattr(api_main, "SessionLocal", lambda: session)
    return session


def test_health() -> None:
    assert api_main.health() == {"status": "ok"}


def test_operator_guard(monkeypatch) -> None:
    monkeypatch.delenv("OPERATOR_TOKEN", raising=False)
    monkeypatch.delenv("ALLOW_OPS_WITHOUT_TOKEN", raising=False)
    with pytest.raises(HTTPException) as excinfo:
        api_main._require_operator(None)
    assert excinfo.value.status_code == 503

    monkeypatch.setenv("OPERATOR_TOKEN", "secret")
    with pytest.raises(HTTPException) as excinfo:
        api_main._require_operator("wrong")
    assert excinfo.value.status_code == 401
    assert api_main._require_operator("secret") is None

    monkeypatch.delenv("OPERATOR_TOKEN")
    monkeypatch.setenv("ALLOW_OPS_WITHOUT_TOKEN", "1")
    assert api_main._require_operator(None) is None


def test_run_task_returns_minted_asset(monkeypatch) -> None:
    session = _install_session(monkeypatch)
    minted = _asset()
    captured: dict = {}

    def _run_task(_session, srt_asset_id, task, profile, routing, judge_routing):
        captured.update(task=task, profile=profile, routing=routing, judge_routing=judge_routing)
        return minted

    monkeypatch.setattr(api_main, "run_task", _run_task)
    monkeypatch.setattr(api_main, "resolve_route", lambda _session, task, kind: load_route(task, kind))
    request = api_main.TaskRunRequest(
        profile={"quality": {"mode": "standard"}},
        routing={"provider": "openrouter", "model": "openrouter/auto", "temperature": 0.5},
    )

    body = api_main.run_generation_task(minted.srt_asset_id, "linkedin", request, _guard=None)

    assert body["id"] == str(minted.id)
    assert body["version"] == 2
    assert captured["routing"].provider == "openrouter"
    assert captured["routing"].temperature == 0.5
    assert captured["judge_routing"] is None
    assert session.closed is True


def test_unknown_task_is_bad_request(monkeypatch) -> None:
    _install_session(monkeypatch)

    with pytest.raises(HTTPException) as excinfo:
        api_main.run_generation_task(uuid4(), "podcast", None, _guard=None)

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "unknown_task"


@pytest.mark.parametrize(
    ("error", "status_code", "detail"),
    [
        (AssetNotFound("missing"), 404, "asset_not_found"),
        (TaskBlocked("x", TaskDiagnostics("x", "blocked", "openai", "gpt-5-mini", 7.4, 7.5)), 409, "task_blocked"),
        (RunCancelled("x run cancelled"), 409, "run_cancelled"),
    ],
)
def test_run_task_errors_are_mapped(monkeypatch, error, status_code: int, detail: str) -> None:
    session = _install_session(monkeypatch)

    def _run_task(*args, **kwargs):
        raise error

    monkeypatch.setattr(api_main, "run_task", _run_task)

    with pytest.raises(HTTPException) as excinfo:
        api_main.run_generation_task(uuid4(), "x", None, _guard=None)

    assert excinfo.value.status_code == status_code
    assert excinfo.value.detail == detail
    assert session.closed is True


@pytest.mark.parametrize(
    ("code", "status_code"),
    [("path_not_found", 404), ("invalid_block_value", 400), ("unsafe_path", 400), ("evidence_only_violation", 400)],
)
def test_block_errors_are_mapped(monkeypatch, code: str, status_code: int) -> None:
    _install_session(monkeypatch)

    def _refine_block(*args, **kwargs):
        raise BlockEditError(code)

    monkeypatch.setattr(api_main, "refine_block", _refine_block)
    request = api_main.BlockRefineRequest(path="sections[2].bullets", action="deepen", evidence_only=True)

    with pytest.raises(HTTPException) as excinfo:
        api_main.refine_generation_block(uuid4(), "newsletter", request, _guard=None)

    assert excinfo.value.status_code == status_code
    assert excinfo.value.detail == code


def test_block_refine_forwards_arguments(monkeypatch) -> None:
    _install_session(monkeypatch)
    captured: list = []

    def _refine_block(_session, srt_asset_id, task, path, action, instruction, evidence_only):
        captured.extend([task, path, action, instruction, evidence_only])
        return _asset(task="newsletter", source="block_refine")

    monkeypatch.setattr(api_main, "refine_block", _refine_block)
    request = api_main.BlockRefineRequest(
        path="sections[2].bullets", action="deepen", instruction="mais concreto", evidence_only=True
    )

    body = api_main.refine_generation_block(uuid4(), "newsletter", request, _guard=None)

    assert captured == ["newsletter", "sections[2].bullets", "deepen", "mais concreto", True]
    assert body["source"] == "block_refine"


def test_save_block_returns_new_version(monkeypatch) -> None:
    _install_session(monkeypatch)
    monkeypatch.setattr(
        api_main, "save_block", lambda _session, _id, task, path, value: _asset(version=3, source="block_save")
    )

    body = api_main.save_generation_block(
        uuid4(), "linkedin", api_main.BlockSaveRequest(path="hook", value="Novo gancho direto"), _guard=None
    )

    assert body["version"] == 3
    assert body["source"] == "block_save"


def test_select_variant_not_selectable_is_conflict(monkeypatch) -> None:
    _install_session(monkeypatch)

    def _select(*args, **kwargs):
        raise VariantNotSelectable("variant 3 is not selectable: schema_invalid")

    monkeypatch.setattr(api_main, "select_variant", _select)

    with pytest.raises(HTTPException) as excinfo:
        api_main.select_generation_variant(uuid4(), "linkedin", 3, _guard=None)

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail == "variant_not_selectable"


def test_refine_task_forwards_action(monkeypatch) -> None:
    _install_session(monkeypatch)
    captured: dict = {}

    def _refine(_session, srt_asset_id, task, action, instruction):
        captured.update(task=task, action=action, instruction=instruction)
        return _asset(source="refine")

    monkeypatch.setattr(api_main, "refine_task", _refine)

    body = api_main.refine_generation_task(
        uuid4(), "linkedin", api_main.RefineTaskRequest(action="shorten"), _guard=None
    )

    assert captured == {"task": "linkedin", "action": "shorten", "instruction": None}
    assert body["source"] == "refine"


def test_run_all_enqueues_jobs(monkeypatch) -> None:
    srt_asset_id = uuid4()
    job_id = uuid4()
    monkeypatch.setattr(
        pipeline_queue,
        "enqueue_generation",
        lambda _id, tasks: {"srt_asset_id": _id, "jobs": {task: {"job_id": job_id, "rq_id": "rq-1"} for task in tasks}},
    )

    body = api_main.run_all_generation(srt_asset_id, api_main.RunAllRequest(tasks=["analysis", "x"]), _guard=None)

    assert body["srt_asset_id"] == str(srt_asset_id)
    assert set(body["jobs"]) == {"analysis", "x"}
    assert body["jobs"]["x"]["job_id"] == str(job_id)


def test_run_all_rejects_unknown_tasks() -> None:
    with pytest.raises(HTTPException) as excinfo:
        api_main.run_all_generation(uuid4(), api_main.RunAllRequest(tasks=["podcast"]), _guard=None)

    assert excinfo.value.status_code == 400


def test_activate_unknown_prompt_version_is_not_found(monkeypatch) -> None:
    def _activate(task, version):
        raise PromptCatalogError(f"prompt version {version} not found for task {task}")

    monkeypatch.setattr(api_main, "activate_prompt_version", _activate)

    with pytest.raises(HTTPException) as excinfo:
        api_main.activate_prompt(task="reels", version=9, _guard=None)

    assert excinfo.value.status_code == 404
    assert excinfo.value.detail == "prompt_version_not_found"


def test_diagnostics_listing_closes_session(monkeypatch) -> None:
    session = _install_session(monkeypatch)
    rows = [{"task": "analysis", "status": "completed"}]
    monkeypatch.setattr(api_main, "get_diagnostics", lambda _session, _id: rows)

    body = api_main.list_diagnostics(uuid4())

    assert body == [{"task": "analysis", "status": "completed"}]
    assert session.closed is True


def test_invalid_profile_is_bad_request(monkeypatch) -> None:
    session = _install_session(monkeypatch)
    monkeypatch.setattr(api_main, "run_task", lambda _session, _id, task, profile, *args: load_profile(profile))
    request = api_main.TaskRunRequest(profile={"quality": {"mode": "turbo"}})

    with pytest.raises(HTTPException) as excinfo:
        api_main.run_generation_task(uuid4(), "linkedin", request, _guard=None)

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "invalid_profile"
    assert session.closed is True


def test_asset_profile_update_can_queue_a_rerun(monkeypatch) -> None:
    _install_session(monkeypatch)
    srt_asset_id = uuid4()
    captured: dict = {}

    def _update(_session, _id, generation_profile):
        captured["profile"] = generation_profile
        return SimpleNamespace(
            id=_id, status="ready", revision=4, generation_profile=generation_profile, updated_at=None
        )

    monkeypatch.setattr(api_main, "update_asset_profile", _update)
    monkeypatch.setattr(
        pipeline_queue,
        "enqueue_generation",
        lambda _id, tasks: {"srt_asset_id": _id, "jobs": {"analysis": {"job_id": "j-1", "rq_id": "rq-1"}}},
    )
    request = api_main.AssetProfileRequest(generation_profile={"quality": {"mode": "standard"}}, rerun=True)

    body = api_main.patch_asset_profile(srt_asset_id, request, _guard=None)

    assert captured["profile"] == {"quality": {"mode": "standard"}}
    assert body["asset"]["revision"] == 4
    assert body["rerun_queued"] is True
    assert body["jobs"]["analysis"]["rq_id"] == "rq-1"


def test_routing_patch_errors_are_bad_requests(monkeypatch) -> None:
    _install_session(monkeypatch)

    with pytest.raises(HTTPException) as excinfo:
        api_main.patch_ai_routing(api_main.RoutingPatchRequest(), _guard=None)
    assert excinfo.value.detail == "empty_routing_patch"

    def _update(*args, **kwargs):
        raise PreferenceError("unknown_provider")

    monkeypatch.setattr(api_main, "update_routing", _update)
    with pytest.raises(HTTPException) as excinfo:
        api_main.patch_ai_routing(
            api_main.RoutingPatchRequest(routing={"x": {"provider": "mystery"}}), _guard=None
        )
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "unknown_provider"


def test_metrics_reset_clears_gateway_state(monkeypatch) -> None:
    gateway = ProviderGateway()
    route = AIRoute(provider="heuristic", model="heuristic-v1", temperature=0.0)
    gateway.execute(route, "sys", "user", task="x", heuristic=lambda: {"standalone": ["a"]})
    monkeypatch.setattr(api_main, "get_gateway", lambda: gateway)
    assert api_main.llm_metrics(_guard=None)["routes"]

    body = api_main.reset_llm_metrics(_guard=None)

    assert body == {"routes": {}, "open_breakers": {}}
