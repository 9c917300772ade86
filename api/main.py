from __future__ import annotations

from contextlib import contextmanager
from os import getenv
from typing import Any, Iterator, List, Literal, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import desc, select

from db.models import Job
from db.session import SessionLocal
from generation.blocks import BlockEditError
from generation.preferences import (
    PreferenceError,
    get_preferences,
    get_routing,
    resolve_route,
    update_preferences,
    update_routing,
)
from generation.profile import REFINE_ACTIONS
from generation.service import (
    AssetNotFound,
    RunCancelled,
    TaskBlocked,
    VariantNotSelectable,
    activate_prompt_version,
    asset_to_dict,
    create_prompt_version,
    get_diagnostics,
    list_assets,
    list_prompt_catalog,
    refine_block,
    refine_task,
    run_task,
    save_block,
    select_variant,
    srt_asset_to_dict,
    update_asset_profile,
)
from llm import get_gateway
from llm.routing import TASKS, is_provider_configured, route_from_dict
from prompts.catalog import PromptCatalogError

app = FastAPI(title="Generation Quality API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

RefineAction = Literal["improve", "shorten", "deepen", "provocative"]


def _paginate(limit: int, offset: int) -> tuple[int, int]:
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    return limit, offset


def _require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    expected = getenv("OPERATOR_TOKEN", "")
    if not expected:
        if getenv("ALLOW_OPS_WITHOUT_TOKEN", "0") == "1":
            return
        raise HTTPException(status_code=503, detail="operator_token_missing")
    if x_operator_token != expected:
        raise HTTPException(status_code=401, detail="operator_token_required")


def _check_task(task: str) -> None:
    if task not in TASKS:
        raise HTTPException(status_code=400, detail="unknown_task")


@contextmanager
def _service_errors() -> Iterator[None]:
    try:
        yield
    except AssetNotFound as exc:
        raise HTTPException(status_code=404, detail="asset_not_found") from exc
    except TaskBlocked as exc:
        raise HTTPException(status_code=409, detail="task_blocked") from exc
    except RunCancelled as exc:
        raise HTTPException(status_code=409, detail="run_cancelled") from exc
    except VariantNotSelectable as exc:
        raise HTTPException(status_code=409, detail="variant_not_selectable") from exc
    except BlockEditError as exc:
        raise HTTPException(status_code=404 if exc.code == "path_not_found" else 400, detail=exc.code) from exc
    except PromptCatalogError as exc:
        raise HTTPException(status_code=400, detail="prompt_catalog_error") from exc
    except PreferenceError as exc:
        raise HTTPException(status_code=400, detail=exc.code) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="invalid_profile") from exc


def _route_dict(route) -> dict:
    return {
        "provider": route.provider,
        "model": route.model,
        "temperature": route.temperature,
        "api_key_present": route.provider == "heuristic" or is_provider_configured(route.provider),
    }


class TaskRunRequest(BaseModel):
    profile: dict[str, Any] | None = Field(default=None)
    routing: dict[str, Any] | None = Field(default=None)
    judge_routing: dict[str, Any] | None = Field(default=None)


class RunAllRequest(BaseModel):
    tasks: list[str] | None = Field(default=None)


class RefineTaskRequest(BaseModel):
    action: RefineAction = Field(default="improve")
    instruction: str | None = Field(default=None, max_length=600)


class BlockRefineRequest(BaseModel):
    path: str = Field(min_length=1, max_length=200)
    action: RefineAction = Field(default="improve")
    instruction: str | None = Field(default=None, max_length=600)
    evidence_only: bool = Field(default=False)


class BlockSaveRequest(BaseModel):
    path: str = Field(min_length=1, max_length=200)
    value: Any


class PromptVersionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    system_prompt: str = Field(min_length=1)
    user_prompt_template: str = Field(min_length=1)
    activate: bool = Field(default=False)


class RoutingPatchRequest(BaseModel):
    routing: dict[str, dict[str, Any]] | None = Field(default=None)
    judge_routing: dict[str, dict[str, Any]] | None = Field(default=None)


class PreferencesPatchRequest(BaseModel):
    generation_profile: dict[str, Any]


class AssetProfileRequest(BaseModel):
    generation_profile: dict[str, Any]
    rerun: bool = Field(default=False)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/settings")
def get_settings() -> dict:
    def flag(name: str, default: str = "") -> str:
        return getenv(name, default)

    return {
        "database_url_set": flag("DATABASE_URL", "") != "",
        "redis_url": flag("REDIS_URL", ""),
        "rq_job_timeout": flag("RQ_JOB_TIMEOUT", "900"),
        "rq_run_all_timeout": flag("RQ_RUN_ALL_TIMEOUT", "1800"),
        "operator_guard": flag("OPERATOR_TOKEN", "") != "",
        "openai_configured": is_provider_configured("openai"),
        "openrouter_configured": is_provider_configured("openrouter"),
        "llm_breaker_threshold": flag("LLM_BREAKER_THRESHOLD", "3"),
        "llm_breaker_cooldown_s": flag("LLM_BREAKER_COOLDOWN_S", "90"),
        "inflation_guard_max_delta": flag("INFLATION_GUARD_MAX_DELTA", "2.5"),
        "inflation_guard_near_max": flag("INFLATION_GUARD_NEAR_MAX", "9.5"),
    }


@app.get("/llm/metrics")
def llm_metrics(_guard: None = Depends(_require_operator)) -> dict:
    return jsonable_encoder(get_gateway().get_metrics_snapshot())


@app.post("/llm/metrics/reset")
def reset_llm_metrics(_guard: None = Depends(_require_operator)) -> dict:
    """Clear usage counters and close every open circuit breaker."""
    gateway = get_gateway()
    gateway.reset()
    return jsonable_encoder(gateway.get_metrics_snapshot())


@app.get("/debug/llm-routes")
def debug_llm_routes(_guard: None = Depends(_require_operator)) -> dict:
    routes: dict[str, dict] = {}
    session = SessionLocal()
    try:
        for task in TASKS:
            try:
                routes[task] = {
                    "generation": _route_dict(resolve_route(session, task, "generation")),
                    "judge": _route_dict(resolve_route(session, task, "judge")),
                }
            except Exception as exc:
                routes[task] = {"error": str(exc)}
    finally:
        session.close()
    return {"routes": routes}


@app.get("/ai/routing")
def get_ai_routing() -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(get_routing(session))
    finally:
        session.close()


@app.patch("/ai/routing")
def patch_ai_routing(
    request: RoutingPatchRequest,
    _guard: None = Depends(_require_operator),
) -> dict:
    if not request.routing and not request.judge_routing:
        raise HTTPException(status_code=400, detail="empty_routing_patch")
    session = SessionLocal()
    try:
        with _service_errors():
            body = update_routing(session, request.routing, request.judge_routing)
        return jsonable_encoder(body)
    finally:
        session.close()


@app.get("/ai/preferences")
def get_ai_preferences() -> dict:
    session = SessionLocal()
    try:
        return jsonable_encoder(get_preferences(session))
    finally:
        session.close()


@app.patch("/ai/preferences")
def patch_ai_preferences(
    request: PreferencesPatchRequest,
    _guard: None = Depends(_require_operator),
) -> dict:
    session = SessionLocal()
    try:
        with _service_errors():
            body = update_preferences(session, request.generation_profile)
        return jsonable_encoder(body)
    finally:
        session.close()


@app.get("/prompts")
def list_prompts() -> dict:
    return jsonable_encoder(list_prompt_catalog())


@app.post("/prompts/{task}/versions")
def create_prompt(
    task: str,
    request: PromptVersionRequest,
    _guard: None = Depends(_require_operator),
) -> dict:
    _check_task(task)
    with _service_errors():
        created = create_prompt_version(
            task,
            request.name,
            request.system_prompt,
            request.user_prompt_template,
            request.activate,
        )
    return jsonable_encoder(created.to_dict())


@app.post("/prompts/{task}/versions/{version}/activate")
def activate_prompt(
    task: str,
    version: int,
    _guard: None = Depends(_require_operator),
) -> dict:
    _check_task(task)
    try:
        activated = activate_prompt_version(task, version)
    except PromptCatalogError as exc:
        raise HTTPException(status_code=404, detail="prompt_version_not_found") from exc
    return jsonable_encoder(activated.to_dict())


@app.patch("/srt-assets/{srt_asset_id}/profile")
def patch_asset_profile(
    srt_asset_id: UUID,
    request: AssetProfileRequest,
    _guard: None = Depends(_require_operator),
) -> dict:
    session = SessionLocal()
    try:
        with _service_errors():
            asset = update_asset_profile(session, srt_asset_id, request.generation_profile)
        body = {"asset": srt_asset_to_dict(asset), "rerun_queued": False}
    finally:
        session.close()
    if request.rerun:
        from pipeline.queue import enqueue_generation

        with _service_errors():
            body["jobs"] = enqueue_generation(srt_asset_id, None)["jobs"]
        body["rerun_queued"] = True
    return jsonable_encoder(body)


@app.post("/srt-assets/{srt_asset_id}/tasks/{task}/run")
def run_generation_task(
    srt_asset_id: UUID,
    task: str,
    request: TaskRunRequest | None = None,
    _guard: None = Depends(_require_operator),
) -> dict:
    _check_task(task)
    request = request or TaskRunRequest()
    session = SessionLocal()
    try:
        routing = (
            route_from_dict(request.routing, resolve_route(session, task, "generation")) if request.routing else None
        )
        judge_routing = (
            route_from_dict(request.judge_routing, resolve_route(session, task, "judge"))
            if request.judge_routing
            else None
        )
        with _service_errors():
            asset = run_task(session, srt_asset_id, task, request.profile, routing, judge_routing)
        return jsonable_encoder(asset_to_dict(asset))
    finally:
        session.close()


@app.post("/srt-assets/{srt_asset_id}/run")
def run_all_generation(
    srt_asset_id: UUID,
    request: RunAllRequest | None = None,
    _guard: None = Depends(_require_operator),
) -> dict:
    from pipeline.queue import enqueue_generation

    request = request or RunAllRequest()
    if request.tasks and any(task not in TASKS for task in request.tasks):
        raise HTTPException(status_code=400, detail="unknown_task")
    with _service_errors():
        result = enqueue_generation(srt_asset_id, request.tasks)
    return jsonable_encoder(result)


@app.post("/srt-assets/{srt_asset_id}/tasks/{task}/refine")
def refine_generation_task(
    srt_asset_id: UUID,
    task: str,
    request: RefineTaskRequest,
    _guard: None = Depends(_require_operator),
) -> dict:
    _check_task(task)
    if request.action not in REFINE_ACTIONS:
        raise HTTPException(status_code=400, detail="unknown_action")
    session = SessionLocal()
    try:
        with _service_errors():
            asset = refine_task(session, srt_asset_id, task, request.action, request.instruction)
        return jsonable_encoder(asset_to_dict(asset))
    finally:
        session.close()


@app.post("/srt-assets/{srt_asset_id}/tasks/{task}/blocks/refine")
def refine_generation_block(
    srt_asset_id: UUID,
    task: str,
    request: BlockRefineRequest,
    _guard: None = Depends(_require_operator),
) -> dict:
    _check_task(task)
    session = SessionLocal()
    try:
        with _service_errors():
            asset = refine_block(
                session,
                srt_asset_id,
                task,
                request.path,
                request.action,
                request.instruction,
                request.evidence_only,
            )
        return jsonable_encoder(asset_to_dict(asset))
    finally:
        session.close()


@app.post("/srt-assets/{srt_asset_id}/tasks/{task}/blocks/save")
def save_generation_block(
    srt_asset_id: UUID,
    task: str,
    request: BlockSaveRequest,
    _guard: None = Depends(_require_operator),
) -> dict:
    _check_task(task)
    session = SessionLocal()
    try:
        with _service_errors():
            asset = save_block(session, srt_asset_id, task, request.path, request.value)
        return jsonable_encoder(asset_to_dict(asset))
    finally:
        session.close()


@app.post("/srt-assets/{srt_asset_id}/tasks/{task}/variants/{variant_index}/select")
def select_generation_variant(
    srt_asset_id: UUID,
    task: str,
    variant_index: int,
    _guard: None = Depends(_require_operator),
) -> dict:
    _check_task(task)
    session = SessionLocal()
    try:
        with _service_errors():
            asset = select_variant(session, srt_asset_id, task, variant_index)
        return jsonable_encoder(asset_to_dict(asset))
    finally:
        session.close()


@app.get("/srt-assets/{srt_asset_id}/diagnostics")
def list_diagnostics(srt_asset_id: UUID) -> List[dict]:
    session = SessionLocal()
    try:
        return jsonable_encoder(get_diagnostics(session, srt_asset_id))
    finally:
        session.close()


@app.get("/srt-assets/{srt_asset_id}/assets")
def list_generated_assets(srt_asset_id: UUID, task: Optional[str] = None) -> List[dict]:
    if task is not None:
        _check_task(task)
    session = SessionLocal()
    try:
        return jsonable_encoder(list_assets(session, srt_asset_id, task))
    finally:
        session.close()


@app.get("/pipeline/jobs")
def list_jobs(
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    srt_asset_id: Optional[UUID] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[dict]:
    limit, offset = _paginate(limit, offset)
    session = SessionLocal()
    try:
        stmt = select(Job)
        if status:
            stmt = stmt.where(Job.status == status)
        if job_type:
            stmt = stmt.where(Job.job_type == job_type)
        if srt_asset_id:
            stmt = stmt.where(Job.srt_asset_id == srt_asset_id)
        stmt = stmt.order_by(desc(Job.created_at)).limit(limit).offset(offset)
        rows = session.execute(stmt).scalars().all()
        return jsonable_encoder(rows)
    finally:
        session.close()
