"""Exposed generation operations backed by the database.

Every operation receives a SQLAlchemy session and commits its own unit of
work. Manual actions on a (srt asset, task) pair serialize through a process
lock plus ``SELECT ... FOR UPDATE`` on the diagnostics row.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
import json
import logging
import threading
import time
from typing import Any, Callable, Iterator
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.models import AuditEvent, GeneratedAsset, SrtAsset, TaskGenerationDiagnosticsRow, TranscriptSegmentRow
from llm.gateway import ProviderGateway
from llm.routing import TASKS, AIRoute
from prompts.catalog import PromptCatalog, PromptTemplate, get_catalog
from .blocks import BlockEditError, get_block, set_block
from .builders import build_analysis
from .orchestrator import build_context, run_block_refinement, run_task_generation
from .preferences import resolve_route, workspace_profile
from .profile import EVIDENCE_ONLY_DIRECTIVE, GenerationProfile, load_profile, tuned_profile_for_refinement
from .schemas import SchemaError, validate_payload
from .selector import RunCancelled
from .text import count_ungrounded_numbers, meets_threshold
from .types import GenerationVariant, TaskDiagnostics, TaskRunResult, TranscriptSegment

logger = logging.getLogger(__name__)

DOWNSTREAM_TASKS = ("reels", "newsletter", "linkedin", "x")

__all__ = [
    "AssetNotFound",
    "RunCancelled",
    "TaskBlocked",
    "VariantNotSelectable",
    "activate_prompt_version",
    "create_prompt_version",
    "get_diagnostics",
    "list_assets",
    "list_prompt_catalog",
    "refine_block",
    "refine_task",
    "run_all_tasks",
    "run_task",
    "save_block",
    "select_variant",
    "update_asset_profile",
]


class AssetNotFound(LookupError):
    pass


class VariantNotSelectable(ValueError):
    pass


class TaskBlocked(RuntimeError):
    """No variant survived validation; diagnostics were persisted, no asset was minted."""

    def __init__(self, task: str, diagnostics: TaskDiagnostics) -> None:
        super().__init__(f"task blocked: {task}")
        self.task = task
        self.diagnostics = diagnostics


_LOCKS: dict[tuple[str, str], threading.Lock] = {}
_LOCK_USERS: dict[tuple[str, str], int] = {}
_LOCKS_GUARD = threading.Lock()


@contextmanager
def _task_lock(srt_asset_id: UUID | str, task: str) -> Iterator[None]:
    key = (str(srt_asset_id), task)
    with _LOCKS_GUARD:
        lock = _LOCKS.setdefault(key, threading.Lock())
        _LOCK_USERS[key] = _LOCK_USERS.get(key, 0) + 1
    try:
        with lock:
            yield
    finally:
        # drop the entry once nobody holds or waits on it
        with _LOCKS_GUARD:
            _LOCK_USERS[key] -= 1
            if not _LOCK_USERS[key]:
                del _LOCK_USERS[key]
                del _LOCKS[key]


def _check_task(task: str) -> None:
    if task not in TASKS:
        raise ValueError(f"unknown task: {task}")


def _get_srt_asset(session: Session, srt_asset_id: UUID | str) -> SrtAsset:
    asset = session.get(SrtAsset, srt_asset_id)
    if asset is None:
        raise AssetNotFound(f"srt asset not found: {srt_asset_id}")
    return asset


def load_segments(session: Session, srt_asset_id: UUID | str) -> list[TranscriptSegment]:
    rows = session.scalars(
        select(TranscriptSegmentRow)
        .where(TranscriptSegmentRow.srt_asset_id == srt_asset_id)
        .order_by(TranscriptSegmentRow.idx)
    ).all()
    return [
        TranscriptSegment(
            idx=row.idx,
            start_ms=row.start_ms,
            end_ms=row.end_ms,
            text=row.text,
            tokens_est=row.tokens_est or max(1, len(row.text) // 4),
        )
        for row in rows
    ]


def latest_asset(session: Session, srt_asset_id: UUID | str, task: str) -> GeneratedAsset | None:
    return session.scalars(
        select(GeneratedAsset)
        .where(GeneratedAsset.srt_asset_id == srt_asset_id, GeneratedAsset.type == task)
        .order_by(GeneratedAsset.version.desc())
        .limit(1)
    ).first()


def _current_asset(session: Session, srt_asset_id: UUID | str, task: str) -> GeneratedAsset:
    asset = latest_asset(session, srt_asset_id, task)
    if asset is None:
        raise AssetNotFound(f"no generated asset for task {task}")
    return asset


def _mint_asset(
    session: Session,
    srt_asset_id: UUID | str,
    task: str,
    payload: dict[str, Any],
    *,
    status: str,
    source: str,
    profile: dict[str, Any] | None,
) -> GeneratedAsset:
    current_version = session.scalar(
        select(func.max(GeneratedAsset.version)).where(
            GeneratedAsset.srt_asset_id == srt_asset_id, GeneratedAsset.type == task
        )
    )
    asset = GeneratedAsset(
        srt_asset_id=srt_asset_id,
        type=task,
        version=(current_version or 0) + 1,
        status=status,
        source=source,
        payload=payload,
        generation_profile=profile,
    )
    session.add(asset)
    session.flush()
    return asset


def _audit(session: Session, event_type: str, payload: dict[str, Any], source: str = "system") -> None:
    session.add(AuditEvent(event_type=event_type, source=source, payload=payload))


def _lock_diagnostics(session: Session, srt_asset_id: UUID | str, task: str) -> TaskGenerationDiagnosticsRow | None:
    return session.scalars(
        select(TaskGenerationDiagnosticsRow)
        .where(
            TaskGenerationDiagnosticsRow.srt_asset_id == srt_asset_id,
            TaskGenerationDiagnosticsRow.task == task,
        )
        .with_for_update()
    ).first()


_DIAGNOSTIC_FIELDS = (
    "status",
    "provider",
    "model",
    "quality_score",
    "quality_initial",
    "quality_final",
    "quality_threshold",
    "judge_quality_score",
    "publishability_score",
    "publishability_threshold",
    "meets_quality_threshold",
    "meets_publishability_threshold",
    "used_heuristic_fallback",
    "fallback_reason",
    "refinement_requested",
    "refinement_applied",
    "refine_passes_target",
    "refine_passes_applied_count",
    "selected_variant",
    "inflation_guard_applied",
    "inflation_guard_reason",
    "prompt_tokens",
    "completion_tokens",
    "total_tokens",
    "estimated_cost_usd",
    "actual_cost_usd",
)


def _upsert_diagnostics(
    session: Session, srt_asset_id: UUID | str, diagnostics: TaskDiagnostics
) -> TaskGenerationDiagnosticsRow:
    row = _lock_diagnostics(session, srt_asset_id, diagnostics.task)
    if row is None:
        row = TaskGenerationDiagnosticsRow(srt_asset_id=srt_asset_id, task=diagnostics.task)
        session.add(row)
    for name in _DIAGNOSTIC_FIELDS:
        setattr(row, name, getattr(diagnostics, name))
    # Round-trip through json so JSONB never receives non-serializable values.
    row.variants = json.loads(json.dumps([variant.to_dict() for variant in diagnostics.variants], default=str))
    row.details = json.loads(json.dumps(diagnostics.details, default=str))
    session.flush()
    return row


def diagnostics_to_dict(row: TaskGenerationDiagnosticsRow) -> dict[str, Any]:
    data = {name: getattr(row, name) for name in _DIAGNOSTIC_FIELDS}
    for name in ("estimated_cost_usd", "actual_cost_usd"):
        if data[name] is not None:
            data[name] = float(data[name])
    data.update(
        {
            "id": row.id,
            "srt_asset_id": row.srt_asset_id,
            "task": row.task,
            "variants": row.variants or [],
            "details": row.details or {},
            "updated_at": row.updated_at,
        }
    )
    return data


def srt_asset_to_dict(asset: SrtAsset) -> dict[str, Any]:
    return {
        "id": asset.id,
        "status": asset.status,
        "revision": asset.revision,
        "generation_profile": asset.generation_profile,
        "updated_at": asset.updated_at,
    }


def asset_to_dict(asset: GeneratedAsset) -> dict[str, Any]:
    return {
        "id": asset.id,
        "srt_asset_id": asset.srt_asset_id,
        "type": asset.type,
        "version": asset.version,
        "status": asset.status,
        "source": asset.source,
        "payload": asset.payload,
        "generation_profile": asset.generation_profile,
        "created_at": asset.created_at,
    }


def revision_watch(
    srt_asset_id: UUID | str,
    revision: int,
    session_factory: Callable[[], Session] | None = None,
    min_interval_s: float = 1.0,
) -> Callable[[], bool]:
    """Cancellation check: True once the srt asset revision moved past ``revision``."""
    if session_factory is None:
        from db.session import SessionLocal

        session_factory = SessionLocal
    state = {"checked_at": 0.0, "cancelled": False}
    lock = threading.Lock()

    def check() -> bool:
        with lock:
            if state["cancelled"]:
                return True
            now = time.monotonic()
            if now - state["checked_at"] < min_interval_s:
                return False
            state["checked_at"] = now
            session = session_factory()
            try:
                current = session.scalar(select(SrtAsset.revision).where(SrtAsset.id == srt_asset_id))
            finally:
                session.close()
            state["cancelled"] = current is None or current != revision
            return state["cancelled"]

    return check


def _asset_status(diagnostics: TaskDiagnostics) -> str:
    if diagnostics.meets_quality_threshold and diagnostics.meets_publishability_threshold:
        return "ready"
    return "pending"


def _persist(
    session: Session,
    srt_asset_id: UUID | str,
    task: str,
    result: TaskRunResult,
    profile: GenerationProfile,
    source: str,
) -> GeneratedAsset:
    try:
        _upsert_diagnostics(session, srt_asset_id, result.diagnostics)
        if result.blocked:
            _audit(session, "generation_blocked", {"srt_asset_id": str(srt_asset_id), "task": task, "source": source})
            session.commit()
            raise TaskBlocked(task, result.diagnostics)
        asset = _mint_asset(
            session,
            srt_asset_id,
            task,
            result.payload,
            status=_asset_status(result.diagnostics),
            source=source,
            profile=profile.snapshot(),
        )
        _audit(
            session,
            "generation_completed",
            {
                "srt_asset_id": str(srt_asset_id),
                "task": task,
                "source": source,
                "asset_id": str(asset.id),
                "version": asset.version,
                "quality_score": result.diagnostics.quality_score,
                "selected_variant": result.diagnostics.selected_variant,
            },
        )
        session.commit()
        session.refresh(asset)
        return asset
    except TaskBlocked:
        raise
    except Exception:
        session.rollback()
        raise


def _analysis_payload(
    session: Session,
    srt_asset_id: UUID | str,
    segments: list[TranscriptSegment],
    profile: GenerationProfile,
) -> dict[str, Any]:
    asset = latest_asset(session, srt_asset_id, "analysis")
    if asset is not None:
        return asset.payload
    logger.warning("no analysis asset for srt_asset=%s, using deterministic analysis", srt_asset_id)
    return build_analysis(segments, profile)


def _prepare(
    session: Session,
    srt_asset_id: UUID | str,
    task: str,
    profile: GenerationProfile | dict[str, Any] | None,
) -> tuple[SrtAsset, list[TranscriptSegment], GenerationProfile]:
    _check_task(task)
    asset = _get_srt_asset(session, srt_asset_id)
    segments = load_segments(session, srt_asset_id)
    if not segments:
        raise AssetNotFound(f"srt asset has no transcript segments: {srt_asset_id}")
    resolved = load_profile(
        profile if profile is not None else asset.generation_profile, base=workspace_profile(session)
    )
    return asset, segments, resolved


def run_task(
    session: Session,
    srt_asset_id: UUID | str,
    task: str,
    profile: GenerationProfile | dict[str, Any] | None = None,
    routing: AIRoute | None = None,
    judge_routing: AIRoute | None = None,
    *,
    catalog: PromptCatalog | None = None,
    gateway: ProviderGateway | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> GeneratedAsset:
    """Generate ``task`` for the srt asset and mint a new ``GeneratedAsset`` version.

    Raises ``TaskBlocked`` when no variant survives and ``RunCancelled`` when
    the asset revision changes mid-run.
    """
    asset, segments, resolved = _prepare(session, srt_asset_id, task, profile)
    return _run(
        session,
        asset,
        task,
        segments,
        resolved,
        routing=routing,
        judge_routing=judge_routing,
        catalog=catalog,
        gateway=gateway,
        cancel_check=cancel_check,
        source="generation",
    )


def _run(
    session: Session,
    asset: SrtAsset,
    task: str,
    segments: list[TranscriptSegment],
    profile: GenerationProfile,
    *,
    routing: AIRoute | None,
    judge_routing: AIRoute | None,
    catalog: PromptCatalog | None,
    gateway: ProviderGateway | None,
    cancel_check: Callable[[], bool] | None,
    source: str,
    forced_refinement: bool = False,
) -> GeneratedAsset:
    template = (catalog or get_catalog()).active(task)
    analysis = None if task == "analysis" else _analysis_payload(session, asset.id, segments, profile)
    ctx = build_context(
        task,
        segments,
        profile,
        template,
        route=routing or resolve_route(session, task, "generation"),
        judge_route=judge_routing or resolve_route(session, task, "judge"),
        analysis=analysis,
        gateway=gateway,
        cancel_check=cancel_check or revision_watch(asset.id, asset.revision),
    )
    result = run_task_generation(ctx, forced_refinement=forced_refinement, prompt=template)
    with _task_lock(asset.id, task):
        return _persist(session, asset.id, task, result, profile, source)


def run_all_tasks(
    session: Session,
    srt_asset_id: UUID | str,
    profile: GenerationProfile | dict[str, Any] | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    catalog: PromptCatalog | None = None,
    gateway: ProviderGateway | None = None,
) -> dict[str, dict[str, Any]]:
    """Analysis first, then the downstream tasks concurrently; one task failing never aborts the others."""
    if session_factory is None:
        from db.session import SessionLocal

        session_factory = SessionLocal

    def outcome(task: str, task_session: Session) -> dict[str, Any]:
        try:
            asset = run_task(task_session, srt_asset_id, task, profile, catalog=catalog, gateway=gateway)
        except TaskBlocked:
            return {"status": "blocked"}
        except RunCancelled:
            logger.warning("run cancelled task=%s srt_asset=%s", task, srt_asset_id)
            return {"status": "cancelled"}
        except AssetNotFound:
            raise
        except Exception as exc:
            logger.exception("task failed task=%s srt_asset=%s", task, srt_asset_id)
            return {"status": "failed", "error": str(exc)}
        return {"status": "completed", "asset_id": str(asset.id), "version": asset.version}

    results = {"analysis": outcome("analysis", session)}

    def downstream(task: str) -> tuple[str, dict[str, Any]]:
        task_session = session_factory()
        try:
            return task, outcome(task, task_session)
        finally:
            task_session.close()

    with ThreadPoolExecutor(max_workers=len(DOWNSTREAM_TASKS), thread_name_prefix="run-all") as executor:
        for task, item in executor.map(downstream, DOWNSTREAM_TASKS):
            results[task] = item
    return results


def refine_task(
    session: Session,
    srt_asset_id: UUID | str,
    task: str,
    action: str,
    instruction: str | None = None,
    *,
    catalog: PromptCatalog | None = None,
    gateway: ProviderGateway | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> GeneratedAsset:
    asset, segments, profile = _prepare(session, srt_asset_id, task, None)
    tuned = tuned_profile_for_refinement(profile, task, action, instruction)
    return _run(
        session,
        asset,
        task,
        segments,
        tuned,
        routing=None,
        judge_routing=None,
        catalog=catalog,
        gateway=gateway,
        cancel_check=cancel_check,
        source="refine",
        forced_refinement=True,
    )


def _block_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return " ".join(_block_text(item) for item in value)
    if isinstance(value, dict):
        return " ".join(_block_text(item) for item in value.values())
    return ""


def refine_block(
    session: Session,
    srt_asset_id: UUID | str,
    task: str,
    path: str,
    action: str,
    instruction: str | None = None,
    evidence_only: bool = False,
    *,
    catalog: PromptCatalog | None = None,
    gateway: ProviderGateway | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> GeneratedAsset:
    """Regenerate one block of the current asset and mint the spliced payload as a new version."""
    srt_asset, segments, profile = _prepare(session, srt_asset_id, task, None)
    current = _current_asset(session, srt_asset_id, task)
    current_value = get_block(current.payload, path)
    tuned = tuned_profile_for_refinement(profile, task, action, instruction, evidence_only=evidence_only)
    template = (catalog or get_catalog()).active(task)
    analysis = None if task == "analysis" else _analysis_payload(session, srt_asset_id, segments, tuned)
    ctx = build_context(
        task,
        segments,
        tuned,
        template,
        route=resolve_route(session, task, "generation"),
        judge_route=resolve_route(session, task, "judge"),
        analysis=analysis,
        gateway=gateway,
        cancel_check=cancel_check or revision_watch(srt_asset.id, srt_asset.revision),
    )
    violations: list[str] = []

    def splice(base: dict[str, Any], refined: dict[str, Any]) -> dict[str, Any]:
        value = get_block(refined, path)
        if evidence_only and count_ungrounded_numbers(_block_text(value), ctx.evidence.numbers):
            violations.append(path)
            raise BlockEditError("evidence_only_violation", f"ungrounded numbers in {path}")
        updated, ok = set_block(base, path, value)
        if not ok:
            raise BlockEditError("path_not_found", f"block not found: {path}")
        return updated

    scope_lines = [
        f"BLOCO_ALVO: {path}",
        f"VALOR_ATUAL_DO_BLOCO: {json.dumps(current_value, ensure_ascii=False)}",
        f"ACAO: {action}",
        "Reescreva somente o BLOCO_ALVO e devolva o JSON completo com os demais campos identicos.",
    ]
    if evidence_only:
        scope_lines.append(EVIDENCE_ONLY_DIRECTIVE)
    result = run_block_refinement(ctx, current.payload, path, splice, scope_lines, prompt=template)
    if evidence_only and violations and not result.diagnostics.refinement_applied:
        raise BlockEditError("evidence_only_violation", f"regenerated block cites numbers outside the source: {path}")
    with _task_lock(srt_asset_id, task):
        return _persist(session, srt_asset_id, task, result, tuned, "block_refine")


def save_block(
    session: Session,
    srt_asset_id: UUID | str,
    task: str,
    path: str,
    value: Any,
) -> GeneratedAsset:
    """Replace one block of the current asset without re-scoring."""
    _check_task(task)
    with _task_lock(srt_asset_id, task):
        try:
            _lock_diagnostics(session, srt_asset_id, task)
            current = _current_asset(session, srt_asset_id, task)
            updated, ok = set_block(current.payload, path, value)
            if not ok:
                raise BlockEditError("path_not_found", f"block not found: {path}")
            try:
                payload = validate_payload(task, updated)
            except SchemaError as exc:
                raise BlockEditError("invalid_block_value", str(exc)) from exc
            asset = _mint_asset(
                session,
                srt_asset_id,
                task,
                payload,
                status=current.status,
                source="block_save",
                profile=current.generation_profile,
            )
            _audit(
                session,
                "block_saved",
                {"srt_asset_id": str(srt_asset_id), "task": task, "path": path, "asset_id": str(asset.id)},
                source="ui",
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
    session.refresh(asset)
    return asset


def select_variant(session: Session, srt_asset_id: UUID | str, task: str, variant_index: int) -> GeneratedAsset:
    """Promote an ``ok`` variant: flip the selected pair in diagnostics and mint its payload."""
    _check_task(task)
    with _task_lock(srt_asset_id, task):
        try:
            row = _lock_diagnostics(session, srt_asset_id, task)
            if row is None:
                raise AssetNotFound(f"no diagnostics for task {task}")
            variants = [GenerationVariant.from_dict(item) for item in row.variants or []]
            target = next((variant for variant in variants if variant.index == variant_index), None)
            if target is None:
                raise VariantNotSelectable(f"variant {variant_index} not found")
            if not target.ok or not target.normalized_output:
                raise VariantNotSelectable(f"variant {variant_index} is not selectable: {target.status}")
            for variant in variants:
                variant.selected = variant.index == variant_index
            row.variants = [variant.to_dict() for variant in variants]
            row.selected_variant = variant_index
            current = latest_asset(session, srt_asset_id, task)
            ready = meets_threshold(target.composite_score, row.quality_threshold) and meets_threshold(
                target.publishability_score, row.publishability_threshold
            )
            asset = _mint_asset(
                session,
                srt_asset_id,
                task,
                target.normalized_output,
                status="ready" if ready else "pending",
                source="variant_select",
                profile=current.generation_profile if current is not None else None,
            )
            _audit(
                session,
                "variant_selected",
                {
                    "srt_asset_id": str(srt_asset_id),
                    "task": task,
                    "variant_index": variant_index,
                    "asset_id": str(asset.id),
                },
                source="ui",
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
    session.refresh(asset)
    return asset


def get_diagnostics(session: Session, srt_asset_id: UUID | str) -> list[dict[str, Any]]:
    rows = session.scalars(
        select(TaskGenerationDiagnosticsRow).where(TaskGenerationDiagnosticsRow.srt_asset_id == srt_asset_id)
    ).all()
    order = {task: position for position, task in enumerate(TASKS)}
    return [diagnostics_to_dict(row) for row in sorted(rows, key=lambda row: order.get(row.task, len(order)))]


def list_assets(session: Session, srt_asset_id: UUID | str, task: str | None = None) -> list[dict[str, Any]]:
    stmt = select(GeneratedAsset).where(GeneratedAsset.srt_asset_id == srt_asset_id)
    if task is not None:
        stmt = stmt.where(GeneratedAsset.type == task)
    rows = session.scalars(stmt.order_by(GeneratedAsset.type, GeneratedAsset.version)).all()
    return [asset_to_dict(row) for row in rows]


def create_prompt_version(
    task: str,
    name: str,
    system_prompt: str,
    user_template: str,
    activate: bool = False,
    *,
    catalog: PromptCatalog | None = None,
) -> PromptTemplate:
    created = (catalog or get_catalog()).create_version(task, name, system_prompt, user_template, activate)
    logger.info("prompt version created task=%s version=%s active=%s", task, created.version, created.is_active)
    return created


def activate_prompt_version(task: str, version: int, *, catalog: PromptCatalog | None = None) -> PromptTemplate:
    activated = (catalog or get_catalog()).activate(task, version)
    logger.info("prompt version activated task=%s version=%s", task, version)
    return activated


def list_prompt_catalog(*, catalog: PromptCatalog | None = None) -> dict[str, dict[str, Any]]:
    return (catalog or get_catalog()).list()


def update_asset_profile(
    session: Session,
    srt_asset_id: UUID | str,
    generation_profile: dict[str, Any],
) -> SrtAsset:
    """Deep-merge ``generation_profile`` into the asset's profile and bump its revision.

    The new revision cancels generations still running against the old
    profile. Invalid fields raise pydantic's ``ValidationError``.
    """
    try:
        asset = session.get(SrtAsset, srt_asset_id, with_for_update=True)
        if asset is None:
            raise AssetNotFound(f"srt asset not found: {srt_asset_id}")
        current = load_profile(asset.generation_profile, base=workspace_profile(session))
        merged = load_profile(generation_profile, base=current)
        asset.generation_profile = merged.snapshot()
        asset.revision = (asset.revision or 0) + 1
        _audit(
            session,
            "srt_profile_updated",
            {"srt_asset_id": str(asset.id), "revision": asset.revision, "fields": sorted(generation_profile)},
            source="ui",
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(asset)
    logger.info("srt asset profile updated srt_asset=%s revision=%s", asset.id, asset.revision)
    return asset
