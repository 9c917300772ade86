"""Single-task generation run: prompt, variants, refinement and diagnostics.

Nothing here touches the database; ``generation.service`` persists the
``TaskRunResult`` this module returns.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import Any, Callable, Sequence

from llm.gateway import ProviderGateway, get_gateway
from llm.routing import AIRoute, default_model, is_provider_configured, load_route
from prompts.catalog import PromptTemplate
from prompts.render import (
    build_prompt_variables,
    quality_context,
    render_template,
    transcript_excerpt,
    with_prompt_controls,
)
from .builders import ClipWindow, clips_context, reels_clip_count, select_clip_windows, transcript_duration_s
from .evidence import EVIDENCE_RULE, build_evidence_map, source_attribution
from .profile import (
    GenerationProfile,
    normalize_weights,
    publishability_threshold,
    quality_plan,
    quality_threshold,
)
from .refinement import RefinementOutcome, Splice, meets_targets, refine
from .scoring import static_guard
from .selector import (
    SelectionResult,
    TaskContext,
    apply_scores,
    score_candidate,
    select_variants,
    validate_candidate,
)
from .text import meets_threshold
from .types import GenerationVariant, TaskDiagnostics, TaskRunResult, TranscriptSegment

logger = logging.getLogger(__name__)


def build_context(
    task: str,
    segments: Sequence[TranscriptSegment],
    profile: GenerationProfile,
    template: PromptTemplate,
    *,
    route: AIRoute | None = None,
    judge_route: AIRoute | None = None,
    analysis: dict[str, Any] | None = None,
    gateway: ProviderGateway | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> TaskContext:
    route = route or load_route(task, "generation")
    judge_route = judge_route or load_route(task, "judge")
    evidence = build_evidence_map(segments, max_lines=96 if profile.quality.mode == "max" else 72)
    windows: list[ClipWindow] = []
    duration_s = transcript_duration_s(segments)
    clip_lines = ""
    if task == "reels":
        task_cfg = profile.tasks["reels"]
        windows = select_clip_windows(
            segments,
            reels_clip_count(duration_s, task_cfg.length),
            duration_s,
            task_cfg.length,
            task_cfg.target_outcome,
        )
        clip_lines = clips_context(windows, segments)
    variables = build_prompt_variables(
        profile,
        task,
        transcript_excerpt(segments, task, profile),
        analysis,
        duration_sec=duration_s,
        clips_context=clip_lines,
    )
    user_prompt = with_prompt_controls(
        render_template(template.user_prompt_template, variables), profile, task, evidence
    )
    return TaskContext(
        task=task,
        profile=profile,
        segments=segments,
        evidence=evidence,
        route=route,
        judge_route=judge_route,
        system_prompt=f"{template.system_prompt}\n{EVIDENCE_RULE}",
        user_prompt=user_prompt,
        judge_context=quality_context(task, variables, evidence, analysis),
        weights=normalize_weights(profile.tasks[task].score_weights),
        quality_threshold=quality_threshold(task, profile),
        publishability_threshold=publishability_threshold(task, profile),
        gateway=gateway or get_gateway(),
        analysis=analysis,
        windows=windows,
        cancel_check=cancel_check,
    )


def _blocked_diagnostics(ctx: TaskContext, selection: SelectionResult, details: dict[str, Any]) -> TaskDiagnostics:
    diagnostics = TaskDiagnostics(
        task=ctx.task,
        status="blocked",
        provider=ctx.route.provider,
        model=ctx.route.model,
        quality_threshold=ctx.quality_threshold,
        publishability_threshold=ctx.publishability_threshold,
        variants=selection.variants,
        used_heuristic_fallback=selection.used_heuristic_fallback,
        fallback_reason=selection.fallback_reason,
        details=details,
    )
    diagnostics.aggregate_usage()
    return diagnostics


def _base_details(ctx: TaskContext, prompt: PromptTemplate | None) -> dict[str, Any]:
    plan = quality_plan(ctx.profile)
    details: dict[str, Any] = {
        "judge_provider": ctx.judge_route.provider,
        "judge_model": ctx.judge_route.model,
        "score_weights": {"judge": ctx.weights[0], "heuristic": ctx.weights[1]},
        "quality_mode": plan.mode,
        "variation_count": plan.variation_count,
    }
    if prompt is not None:
        details["prompt_version"] = prompt.version
        details["prompt_name"] = prompt.name
    return details


def _heuristic_route() -> AIRoute:
    return AIRoute(provider="heuristic", model=default_model("heuristic"), temperature=0.0)


def _finalize(
    ctx: TaskContext,
    selection: SelectionResult,
    outcome: RefinementOutcome,
    quality_initial: float,
    details: dict[str, Any],
) -> TaskRunResult:
    plan = quality_plan(ctx.profile)
    if outcome.log:
        details["refinement_log"] = outcome.log
    selected = selection.winner
    final = selection.candidates[selected.index]
    guard = static_guard(final.composite, final.heuristic.evaluation(), final.guard_judge)
    guard_reasons = [reason for reason in (outcome.inflation_guard_reason, guard.reason) if reason]
    if final.judge_reason:
        details["judge_unavailable_reason"] = final.judge_reason
    if selection.used_heuristic_fallback:
        details["routed_provider"] = ctx.route.provider
    details["source_attribution"] = source_attribution(ctx.task, final.payload, ctx.evidence)

    diagnostics = TaskDiagnostics(
        task=ctx.task,
        status="completed",
        provider="heuristic" if selection.used_heuristic_fallback else ctx.route.provider,
        model=default_model("heuristic") if selection.used_heuristic_fallback else ctx.route.model,
        quality_threshold=ctx.quality_threshold,
        publishability_threshold=ctx.publishability_threshold,
        variants=selection.variants,
        quality_score=guard.score,
        quality_initial=quality_initial,
        quality_final=guard.score,
        judge_quality_score=final.judge_evaluation.score if final.judge_evaluation else None,
        publishability_score=final.publishability,
        meets_quality_threshold=meets_threshold(guard.score, ctx.quality_threshold),
        meets_publishability_threshold=meets_threshold(final.publishability, ctx.publishability_threshold),
        used_heuristic_fallback=selection.used_heuristic_fallback,
        fallback_reason=selection.fallback_reason,
        refinement_requested=outcome.requested,
        refinement_applied=outcome.applied,
        refine_passes_target=plan.refine_passes if outcome.requested else 0,
        refine_passes_applied_count=outcome.passes_applied,
        selected_variant=selected.index,
        inflation_guard_applied=outcome.inflation_guard_applied or guard.applied,
        inflation_guard_reason=" | ".join(guard_reasons) or None,
        details=details,
    )
    diagnostics.aggregate_usage()
    logger.info(
        "task generated task=%s variants=%s selected=%s quality=%.2f publishability=%.2f",
        ctx.task,
        len(selection.variants),
        selected.index,
        guard.score,
        final.publishability,
    )
    return TaskRunResult(diagnostics, final.payload)


def run_task_generation(
    ctx: TaskContext,
    *,
    forced_refinement: bool = False,
    prompt: PromptTemplate | None = None,
) -> TaskRunResult:
    """Generate, select and refine one task; raises ``RunCancelled`` when aborted."""
    plan = quality_plan(ctx.profile)
    details = _base_details(ctx, prompt)
    selection = select_variants(ctx, plan.variation_count)
    details["validation_issues"] = selection.validation_issues
    winner = selection.winner
    if winner is None:
        logger.warning("task blocked task=%s variants=%s", ctx.task, len(selection.variants))
        return TaskRunResult(_blocked_diagnostics(ctx, selection, details), None)

    quality_initial = selection.candidates[winner.index].composite
    refinement_ctx = replace(ctx, route=_heuristic_route()) if selection.used_heuristic_fallback else ctx
    outcome = RefinementOutcome()
    if forced_refinement:
        outcome = refine(refinement_ctx, selection, plan.refine_passes, forced=True)
    elif refinement_ctx.route.provider == "heuristic":
        details["refinement"] = "refinement_skipped: heuristic_route"
    elif plan.mode == "max" and not meets_targets(ctx, selection.candidates[winner.index]):
        outcome = refine(ctx, selection, plan.refine_passes)
    return _finalize(ctx, selection, outcome, quality_initial, details)


def run_block_refinement(
    ctx: TaskContext,
    payload: dict[str, Any],
    path: str,
    splice: Splice,
    scope_lines: list[str],
    *,
    prompt: PromptTemplate | None = None,
) -> TaskRunResult:
    """Regenerate the block at ``path`` of ``payload`` through forced refinement passes."""
    plan = quality_plan(ctx.profile)
    details = _base_details(ctx, prompt)
    details["reason"] = f"block_regenerated:{path}"
    if ctx.route.provider != "heuristic" and not is_provider_configured(ctx.route.provider):
        details["routed_provider"] = ctx.route.provider
        ctx = replace(ctx, route=_heuristic_route())

    seed = GenerationVariant(index=1, status="ok", normalized_output=payload, reason="current_asset", selected=True)
    selection = SelectionResult(variants=[seed])
    seed.issues = validate_candidate(ctx, payload)
    details["validation_issues"] = [f"variant 1: {issue}" for issue in seed.issues]
    candidate = score_candidate(ctx, payload)
    apply_scores(seed, candidate)
    selection.candidates[1] = candidate

    outcome = refine(ctx, selection, plan.refine_passes, forced=True, splice=splice, scope_lines=scope_lines)
    return _finalize(ctx, selection, outcome, candidate.composite, details)
