from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Callable

from llm.routing import task_max_tokens, task_timeout_s
from .judge import quality_rubric
from .schemas import SchemaError, normalize_payload, validate_payload
from .scoring import accepts_refinement, inflation_check
from .selector import (
    RunCancelled,
    ScoredCandidate,
    SelectionResult,
    TaskContext,
    apply_scores,
    score_candidate,
    validate_candidate,
)
from . import heuristic
from .text import meets_threshold, truncate
from .types import GenerationVariant

logger = logging.getLogger(__name__)

Splice = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]


@dataclass
class RefinementOutcome:
    requested: bool = False
    applied: bool = False
    passes_applied: int = 0
    inflation_guard_applied: bool = False
    inflation_guard_reason: str | None = None
    log: list[str] = field(default_factory=list)


def refinement_system_prompt() -> str:
    return "\n".join(
        [
            "Voce e um Editor-Chefe de conteudo premium.",
            "Sua missao e reescrever o JSON candidato para elevar qualidade editorial sem quebrar schema.",
            "Priorize especificidade, densidade de insight, progressao logica e aplicabilidade pratica.",
            "Seu trabalho e transformar respostas medianas em respostas de nivel senior.",
            "Remova frases vagas, repeticao, cliche e qualquer tom motivacional vazio.",
            "Nao invente fatos fora do contexto fornecido.",
            "Nunca use travessao em nenhum texto.",
            "Retorne SOMENTE JSON valido.",
        ]
    )


def refinement_user_prompt(
    task: str,
    pass_number: int,
    total_passes: int,
    current_score: float,
    threshold: float,
    context: str,
    payload: dict[str, Any],
    weaknesses: list[str],
    scope_lines: list[str] | None = None,
) -> str:
    lines = [
        f"TAREFA: {task}",
        f"PASSE_REFINO: {pass_number}/{total_passes}",
        f"SCORE_ATUAL: {current_score:.2f}/10",
        f"META_MINIMA: {threshold:.1f}/10",
        f"RUBRICA: {quality_rubric(task)}",
        f"CONTEXTO:\n{truncate(context, 9000)}",
        f"JSON_CANDIDATO:\n{json.dumps(payload, ensure_ascii=False)}",
    ]
    if scope_lines:
        lines.extend(scope_lines)
    lines.extend(
        [
            "REGRAS DE MELHORIA OBRIGATORIAS:",
            "1) Aumente especificidade sem extrapolar o contexto.",
            "2) Substitua termos vagos por formulacoes concretas.",
            "3) Entregue mais profundidade pratica e menos slogan.",
            "4) Mantenha o mesmo schema e os mesmos campos.",
            f"5) Corrija estas fraquezas: {' | '.join(weaknesses[:8]) if weaknesses else 'n/a'}",
            "INSTRUCAO FINAL: entregue uma versao claramente superior no mesmo schema.",
        ]
    )
    return "\n".join(lines)


def meets_targets(ctx: TaskContext, candidate: ScoredCandidate) -> bool:
    return meets_threshold(candidate.composite, ctx.quality_threshold) and meets_threshold(
        candidate.publishability, ctx.publishability_threshold
    )


def _weaknesses(candidate: ScoredCandidate) -> list[str]:
    items = list(candidate.guard_judge.weaknesses)
    items.extend(issue for issue in candidate.heuristic.issues if issue not in items)
    return items


def _reject(variant: GenerationVariant, status: str, reason: str) -> GenerationVariant:
    variant.status = status
    variant.reason = reason
    return variant


def refine(
    ctx: TaskContext,
    selection: SelectionResult,
    passes: int,
    *,
    forced: bool = False,
    splice: Splice | None = None,
    scope_lines: list[str] | None = None,
) -> RefinementOutcome:
    """Run up to ``passes`` refinement passes on the selected variant of ``selection``.

    Refined variants are appended to ``selection.variants`` and take over the
    ``selected`` flag only when accepted. ``forced`` guarantees the first pass.
    """
    outcome = RefinementOutcome(requested=True)
    winner = selection.winner
    if winner is None:
        return outcome
    base_index = max(variant.index for variant in selection.variants)
    current = selection.candidates[winner.index]
    current_variant = winner

    for pass_number in range(1, passes + 1):
        if not (forced and pass_number == 1) and meets_targets(ctx, current):
            outcome.log.append(f"pass {pass_number}: thresholds_met")
            break
        if ctx.cancelled():
            raise RunCancelled(f"{ctx.task} refinement cancelled")
        outcome.passes_applied += 1
        index = base_index + pass_number
        result = ctx.gateway.execute(
            ctx.route,
            refinement_system_prompt(),
            refinement_user_prompt(
                ctx.task,
                pass_number,
                passes,
                current.composite,
                ctx.quality_threshold,
                ctx.judge_context,
                current.payload,
                _weaknesses(current),
                scope_lines,
            ),
            task=ctx.task,
            kind="refine",
            max_tokens=task_max_tokens(ctx.task),
            timeout_s=task_timeout_s(ctx.task),
            heuristic=ctx.heuristic_payload,
        )
        if not result.ok:
            logger.warning("refinement pass failed task=%s pass=%s reason=%s", ctx.task, pass_number, result.reason)
            selection.variants.append(
                GenerationVariant(index=index, status="request_failed", pass_index=pass_number, reason=result.reason)
            )
            outcome.log.append(f"pass {pass_number}: {result.kind}")
            continue

        variant = GenerationVariant(
            index=index,
            status="ok",
            pass_index=pass_number,
            model_output=result.text,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            total_tokens=result.total_tokens,
            estimated_cost_usd=result.estimated_cost_usd,
            actual_cost_usd=result.actual_cost_usd,
        )
        selection.variants.append(variant)
        try:
            refined = normalize_payload(ctx.task, result.text, ctx.segments)
            if splice is not None:
                refined = validate_payload(ctx.task, splice(current.payload, refined))
        except (SchemaError, ValueError) as exc:
            logger.warning("refinement output rejected task=%s pass=%s error=%s", ctx.task, pass_number, exc)
            _reject(variant, "schema_invalid", str(exc))
            outcome.log.append(f"pass {pass_number}: schema_invalid")
            continue
        variant.normalized_output = refined
        issues = validate_candidate(ctx, refined)
        variant.issues = issues
        blocking = heuristic.blocking_issues(issues)
        if blocking:
            _reject(variant, "schema_invalid", f"quality_guard: {'; '.join(blocking[:4])}")
            outcome.log.append(f"pass {pass_number}: quality_guard")
            continue

        candidate = score_candidate(ctx, refined)
        apply_scores(variant, candidate)
        selection.candidates[index] = candidate
        before_judge = current.judge_evaluation.score if current.judge_evaluation else None
        after_judge = candidate.judge_evaluation.score if candidate.judge_evaluation else None
        guard_reason = inflation_check(
            current.heuristic.score,
            candidate.heuristic.score,
            before_judge,
            after_judge,
            ctx.quality_threshold,
        )
        if guard_reason:
            logger.warning("inflation guard task=%s pass=%s reason=%s", ctx.task, pass_number, guard_reason)
            outcome.inflation_guard_applied = True
            outcome.inflation_guard_reason = guard_reason
            variant.reason = f"inflation_guard: {guard_reason}"
            outcome.log.append(f"pass {pass_number}: inflation_guard")
            continue
        if not accepts_refinement(current.composite, candidate.composite):
            variant.reason = "refinement_rejected: lower_score"
            outcome.log.append(f"pass {pass_number}: rejected {candidate.composite:.2f}<{current.composite:.2f}")
            continue

        current_variant.selected = False
        variant.selected = True
        variant.reason = "refinement_accepted"
        current_variant = variant
        current = candidate
        outcome.applied = True
        outcome.log.append(f"pass {pass_number}: accepted {candidate.composite:.2f}")
    return outcome
