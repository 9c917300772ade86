"""Multi-variant generation and winner selection for one task run."""

from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Callable, Sequence

from llm.gateway import ProviderGateway, ProviderResult, ProviderSuccess
from llm.routing import AIRoute, default_model, is_provider_configured, task_max_tokens, task_timeout_s
from prompts.render import variation_directive
from . import heuristic
from .builders import ClipWindow, build_heuristic_payload
from .evidence import EvidenceMap
from .judge import JudgeResult, fallback_judge_evaluation, judge
from .profile import GenerationProfile
from .schemas import SchemaError, normalize_payload
from .scoring import composite_score, publishability_score
from .types import GenerationVariant, QualityEvaluation, TranscriptSegment

logger = logging.getLogger(__name__)

_POLL_INTERVAL_S = 0.25


class RunCancelled(RuntimeError):
    """The asset changed underneath a running generation; nothing may be persisted."""


@dataclass
class TaskContext:
    """Everything one task run needs; built once by the orchestrator, read-only afterwards."""

    task: str
    profile: GenerationProfile
    segments: Sequence[TranscriptSegment]
    evidence: EvidenceMap
    route: AIRoute
    judge_route: AIRoute
    system_prompt: str
    user_prompt: str
    judge_context: str
    weights: tuple[float, float]
    quality_threshold: float
    publishability_threshold: float
    gateway: ProviderGateway
    analysis: dict[str, Any] | None = None
    windows: Sequence[ClipWindow] = ()
    cancel_check: Callable[[], bool] | None = None

    @property
    def judge_enabled(self) -> bool:
        return self.profile.quality.mode == "max"

    def heuristic_payload(self) -> dict[str, Any]:
        return build_heuristic_payload(self.task, self.segments, self.profile, self.analysis, self.windows)

    def cancelled(self) -> bool:
        return bool(self.cancel_check and self.cancel_check())


@dataclass
class ScoredCandidate:
    payload: dict[str, Any]
    heuristic: heuristic.HeuristicResult
    judge: JudgeResult | None
    fallback_judge: QualityEvaluation
    composite: float
    publishability: float

    @property
    def judge_evaluation(self) -> QualityEvaluation | None:
        return self.judge.evaluation if self.judge else None

    @property
    def judge_reason(self) -> str | None:
        if self.judge is None:
            return "judge_disabled_standard_mode"
        return self.judge.unavailable_reason

    @property
    def guard_judge(self) -> QualityEvaluation:
        return self.judge_evaluation or self.fallback_judge


@dataclass
class SelectionResult:
    variants: list[GenerationVariant]
    candidates: dict[int, ScoredCandidate] = field(default_factory=dict)
    used_heuristic_fallback: bool = False
    fallback_reason: str | None = None
    validation_issues: list[str] = field(default_factory=list)

    @property
    def winner(self) -> GenerationVariant | None:
        return next((variant for variant in self.variants if variant.selected), None)


def validate_candidate(ctx: TaskContext, payload: dict[str, Any]) -> list[str]:
    return heuristic.validate_payload(
        ctx.task, payload, ctx.evidence, ctx.segments, ctx.profile.tasks[ctx.task]
    )


def score_candidate(ctx: TaskContext, payload: dict[str, Any], *, use_judge: bool | None = None) -> ScoredCandidate:
    """Heuristic score, optional judge call, composite and publishability for one payload."""
    heuristic_result = heuristic.score(
        ctx.task, payload, ctx.evidence, ctx.profile.tasks[ctx.task], ctx.segments
    )
    heuristic_eval = heuristic_result.evaluation()
    judged = None
    if use_judge is None:
        use_judge = ctx.judge_enabled
    if use_judge:
        judged = judge(ctx.task, payload, ctx.judge_context, ctx.judge_route, ctx.gateway)
    reason = (judged.unavailable_reason if judged else None) or "judge_disabled_standard_mode"
    fallback = fallback_judge_evaluation(ctx.task, payload, heuristic_eval, reason)
    judge_eval = judged.evaluation if judged else None
    return ScoredCandidate(
        payload=payload,
        heuristic=heuristic_result,
        judge=judged,
        fallback_judge=fallback,
        composite=composite_score(heuristic_eval, judge_eval, ctx.weights),
        publishability=publishability_score(ctx.task, payload, heuristic_eval, judge_eval or fallback),
    )


def apply_scores(variant: GenerationVariant, candidate: ScoredCandidate) -> None:
    variant.heuristic_score = candidate.heuristic.score
    variant.heuristic_subscores = dict(candidate.heuristic.subscores)
    evaluation = candidate.judge_evaluation
    if evaluation is not None:
        variant.judge_score = evaluation.score
        variant.judge_subscores = dict(evaluation.subscores)
    elif candidate.judge is not None:
        # heuristic-only scoring; keep the judge failure on the variant itself
        unavailable = candidate.judge.unavailable_reason or "judge_unavailable"
        if not variant.reason:
            variant.reason = unavailable
        elif unavailable not in variant.reason:
            variant.reason = f"{variant.reason}; {unavailable}"
    variant.composite_score = candidate.composite
    variant.publishability_score = candidate.publishability
    if candidate.judge is not None:
        variant.prompt_tokens += candidate.judge.prompt_tokens
        variant.completion_tokens += candidate.judge.completion_tokens
        variant.total_tokens += candidate.judge.total_tokens
        variant.estimated_cost_usd = round(variant.estimated_cost_usd + candidate.judge.estimated_cost_usd, 6)
        if candidate.judge.actual_cost_usd is not None:
            variant.actual_cost_usd = round((variant.actual_cost_usd or 0.0) + candidate.judge.actual_cost_usd, 6)


def _usage_variant(index: int, result: ProviderSuccess, pass_index: int = 0) -> GenerationVariant:
    return GenerationVariant(
        index=index,
        status="ok",
        pass_index=pass_index,
        model_output=result.text,
        prompt_tokens=result.prompt_tokens,
        completion_tokens=result.completion_tokens,
        total_tokens=result.total_tokens,
        estimated_cost_usd=result.estimated_cost_usd,
        actual_cost_usd=result.actual_cost_usd,
    )


def _canonical(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _run_attempts(ctx: TaskContext, total: int) -> dict[int, ProviderResult | None]:
    """Issue ``total`` attempts concurrently; None marks an attempt abandoned by cancellation."""
    timeout_s = task_timeout_s(ctx.task)
    max_tokens = task_max_tokens(ctx.task)
    results: dict[int, ProviderResult | None] = {}
    executor = ThreadPoolExecutor(max_workers=total, thread_name_prefix=f"gen-{ctx.task}")
    try:
        futures: dict[Future, int] = {
            executor.submit(
                ctx.gateway.execute,
                ctx.route,
                ctx.system_prompt,
                f"{ctx.user_prompt}\n\n{variation_directive(ctx.task, index, total)}",
                task=ctx.task,
                kind="generation",
                max_tokens=max_tokens,
                timeout_s=timeout_s,
                heuristic=ctx.heuristic_payload,
            ): index + 1
            for index in range(total)
        }
        pending = set(futures)
        while pending:
            if ctx.cancelled():
                for future in pending:
                    future.cancel()
                    results[futures[future]] = None
                break
            done, pending = wait(pending, timeout=_POLL_INTERVAL_S, return_when=FIRST_COMPLETED)
            for future in done:
                results[futures[future]] = future.result()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return results


def _heuristic_variant(ctx: TaskContext, index: int) -> tuple[GenerationVariant, dict[str, Any] | None]:
    route = AIRoute(provider="heuristic", model=default_model("heuristic"), temperature=0.0)
    result = ctx.gateway.execute(
        route, ctx.system_prompt, ctx.user_prompt, task=ctx.task, heuristic=ctx.heuristic_payload
    )
    if not result.ok:
        return GenerationVariant(index=index, status="request_failed", reason=result.reason), None
    variant = _usage_variant(index, result)
    try:
        payload = normalize_payload(ctx.task, result.text, ctx.segments)
    except SchemaError as exc:
        variant.status = "schema_invalid"
        variant.reason = str(exc)
        return variant, None
    variant.normalized_output = payload
    return variant, payload


def select_variants(ctx: TaskContext, variation_count: int) -> SelectionResult:
    """Generate, normalize, score and select; raises ``RunCancelled`` when the run was aborted."""
    if ctx.route.provider == "heuristic" or not is_provider_configured(ctx.route.provider):
        reason = "provider_set_heuristic" if ctx.route.provider == "heuristic" else "auth_missing"
        variant, payload = _heuristic_variant(ctx, 1)
        selection = SelectionResult(variants=[variant], used_heuristic_fallback=True, fallback_reason=reason)
        if payload is not None:
            _score_and_select(ctx, selection, {1: payload}, soft_guard=True)
        return selection

    results = _run_attempts(ctx, variation_count)
    variants: list[GenerationVariant] = []
    payloads: dict[int, dict[str, Any]] = {}
    failure_kinds: list[str] = []
    for index in range(1, variation_count + 1):
        result = results.get(index)
        if result is None:
            variants.append(GenerationVariant(index=index, status="request_failed", reason="cancelled"))
            continue
        if not result.ok:
            failure_kinds.append(result.kind)
            logger.warning(
                "generation attempt failed task=%s variant=%s kind=%s reason=%s",
                ctx.task,
                index,
                result.kind,
                result.reason,
            )
            variants.append(GenerationVariant(index=index, status="request_failed", reason=result.reason))
            continue
        variant = _usage_variant(index, result)
        try:
            variant.normalized_output = normalize_payload(ctx.task, result.text, ctx.segments)
        except SchemaError as exc:
            variant.status = "schema_invalid"
            variant.reason = str(exc)
        else:
            payloads[index] = variant.normalized_output
        variants.append(variant)

    if ctx.cancelled() or any(variant.reason == "cancelled" for variant in variants):
        raise RunCancelled(f"{ctx.task} run cancelled")

    if len(failure_kinds) == variation_count:
        fallback_variant, payload = _heuristic_variant(ctx, variation_count + 1)
        variants.append(fallback_variant)
        selection = SelectionResult(variants=variants, used_heuristic_fallback=True, fallback_reason=failure_kinds[0])
        logger.warning("all attempts failed task=%s, using heuristic fallback reason=%s", ctx.task, failure_kinds[0])
        if payload is not None:
            _score_and_select(ctx, selection, {fallback_variant.index: payload}, soft_guard=True)
        return selection

    selection = SelectionResult(variants=variants)
    _score_and_select(ctx, selection, payloads, soft_guard=False)
    return selection


def _score_and_select(
    ctx: TaskContext,
    selection: SelectionResult,
    payloads: dict[int, dict[str, Any]],
    *,
    soft_guard: bool,
) -> None:
    by_index = {variant.index: variant for variant in selection.variants}
    seen: set[str] = set()
    survivors: dict[int, dict[str, Any]] = {}
    for index, payload in sorted(payloads.items()):
        variant = by_index[index]
        issues = validate_candidate(ctx, payload)
        variant.issues = issues
        selection.validation_issues.extend(f"variant {index}: {issue}" for issue in issues)
        blocking = heuristic.blocking_issues(issues)
        if blocking and soft_guard:
            variant.reason = "quality_guard_soft"
        elif blocking:
            variant.status = "schema_invalid"
            variant.reason = f"quality_guard: {'; '.join(blocking[:4])}"
            continue
        canonical = _canonical(payload)
        if canonical in seen:
            variant.status = "schema_invalid"
            variant.reason = "duplicate_candidate"
            continue
        seen.add(canonical)
        survivors[index] = payload

    if not survivors:
        return
    if len(survivors) == 1 or not ctx.judge_enabled:
        scored = {index: score_candidate(ctx, payload) for index, payload in survivors.items()}
    else:
        scored = _score_concurrently(ctx, survivors)
    for index, candidate in scored.items():
        apply_scores(by_index[index], candidate)
        selection.candidates[index] = candidate

    best = min(scored, key=lambda index: (-scored[index].composite, index))
    by_index[best].selected = True


def _score_concurrently(ctx: TaskContext, payloads: dict[int, dict[str, Any]]) -> dict[int, ScoredCandidate]:
    scored: dict[int, ScoredCandidate] = {}
    executor = ThreadPoolExecutor(max_workers=len(payloads), thread_name_prefix=f"judge-{ctx.task}")
    try:
        futures = {executor.submit(score_candidate, ctx, payload): index for index, payload in payloads.items()}
        pending = set(futures)
        while pending:
            if ctx.cancelled():
                for future in pending:
                    future.cancel()
                raise RunCancelled(f"{ctx.task} run cancelled while judging")
            done, pending = wait(pending, timeout=_POLL_INTERVAL_S, return_when=FIRST_COMPLETED)
            for future in done:
                scored[futures[future]] = future.result()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return scored
