from __future__ import annotations

import json

import pytest

from generation import orchestrator, refinement, selector
from generation.blocks import get_block, set_block
from generation.heuristic import HeuristicResult
from generation.judge import JudgeResult
from generation.profile import load_profile
from generation.scoring import composite_score
from generation.selector import ScoredCandidate
from generation.types import SUBSCORE_KEYS, QualityEvaluation, TranscriptSegment
from llm.gateway import ProviderSuccess
from llm.routing import AIRoute
from prompts.catalog import PromptCatalog

BASE_HOOK = "Sua margem some na mesa de negociacao"


def _segments() -> list[TranscriptSegment]:
    lines = [
        "O desconto sem criterio aparece em quase toda negociacao de fim de trimestre.",
        "A estrategia que funcionou foi trocar desconto por escopo em cada proposta.",
        "Em tres meses a margem bruta voltou para 32% sem perder contratos.",
        "O passo pratico e definir antes o que voce aceita trocar na mesa.",
    ]
    return [
        TranscriptSegment(idx=index + 1, start_ms=index * 10_000, end_ms=(index + 1) * 10_000, text=text)
        for index, text in enumerate(lines)
    ]


def _linkedin(hook: str) -> dict:
    return {
        "hook": hook,
        "body": [
            "Desconto sem criterio corroi a margem de empresas de servico.",
            "Troque desconto por escopo e defina a tabela antes da reuniao.",
        ],
        "ctaQuestion": "Qual concessao o seu time faz sem perceber?",
    }


class _ScriptedGateway:
    """Returns ``generation`` for every variant and pops ``refine`` replies in order."""

    def __init__(self, generation: dict, refine: list[dict]) -> None:
        self.generation = generation
        self.refine = list(refine)
        self.refine_prompts: list[str] = []

    def execute(self, route, system_prompt, user_prompt, *, task, kind="generation", **kwargs):
        if kind == "refine":
            self.refine_prompts.append(user_prompt)
            reply = self.refine.pop(0)
        else:
            reply = self.generation
        return ProviderSuccess(text=json.dumps(reply, ensure_ascii=False), provider=route.provider, model=route.model)


def _install_scores(monkeypatch, table: dict[str, tuple[float, float]]) -> None:
    """Score payloads by hook: ``table[hook] = (heuristic, judge)``."""

    def _score(ctx, payload, *, use_judge=None):
        heuristic_value, judge_value = table[payload["hook"]]
        heuristic_result = HeuristicResult(
            score=heuristic_value, subscores={key: heuristic_value for key in SUBSCORE_KEYS}, issues=[]
        )
        evaluation = QualityEvaluation(score=judge_value, subscores={key: judge_value for key in SUBSCORE_KEYS})
        return ScoredCandidate(
            payload=payload,
            heuristic=heuristic_result,
            judge=JudgeResult(evaluation=evaluation, provider="openai", model="gpt-5-mini"),
            fallback_judge=evaluation,
            composite=composite_score(heuristic_result.evaluation(), evaluation, ctx.weights),
            publishability=judge_value,
        )

    for module in (selector, refinement, orchestrator):
        monkeypatch.setattr(module, "score_candidate", _score)
        monkeypatch.setattr(module, "validate_candidate", lambda ctx, payload: [])


def _context(gateway, refine_passes: int = 1):
    profile = load_profile({"quality": {"mode": "max", "variationCount": 1, "refinePasses": refine_passes}})
    return orchestrator.build_context(
        "linkedin",
        _segments(),
        profile,
        PromptCatalog().active("linkedin"),
        route=AIRoute(provider="openai", model="gpt-5-mini", temperature=0.3),
        judge_route=AIRoute(provider="openai", model="gpt-5-mini", temperature=0.0),
        gateway=gateway,
    )


@pytest.fixture(autouse=True)
def _environment(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("INFLATION_GUARD_MAX_DELTA", raising=False)
    monkeypatch.delenv("INFLATION_GUARD_NEAR_MAX", raising=False)
    monkeypatch.delenv("QUALITY_THRESHOLD_LINKEDIN", raising=False)
    monkeypatch.delenv("PUBLISHABILITY_THRESHOLD_LINKEDIN", raising=False)


def test_inflated_refinement_is_discarded(monkeypatch) -> None:
    refined_hook = "Margem perfeita em uma unica semana"
    _install_scores(monkeypatch, {BASE_HOOK: (4.0, 5.0), refined_hook: (9.5, 5.0)})
    gateway = _ScriptedGateway(_linkedin(BASE_HOOK), [_linkedin(refined_hook)])

    result = orchestrator.run_task_generation(_context(gateway))
    diagnostics = result.diagnostics

    assert diagnostics.quality_initial == 4.72
    assert diagnostics.quality_final == diagnostics.quality_initial
    assert diagnostics.inflation_guard_applied is True
    assert diagnostics.inflation_guard_reason.startswith("heuristic_delta_exceeded")
    assert diagnostics.refinement_applied is False
    assert diagnostics.selected_variant == 1
    assert diagnostics.variants[1].reason.startswith("inflation_guard")
    assert result.payload["hook"] == BASE_HOOK


def test_better_refinement_takes_over_selection(monkeypatch) -> None:
    refined_hook = "Desconto sem troca e margem jogada fora"
    _install_scores(monkeypatch, {BASE_HOOK: (5.0, 5.5), refined_hook: (6.0, 6.5)})
    gateway = _ScriptedGateway(_linkedin(BASE_HOOK), [_linkedin(refined_hook)])

    result = orchestrator.run_task_generation(_context(gateway))
    diagnostics = result.diagnostics

    assert diagnostics.refinement_requested is True
    assert diagnostics.refinement_applied is True
    assert diagnostics.refine_passes_applied_count == 1
    assert diagnostics.selected_variant == 2
    assert [variant.selected for variant in diagnostics.variants] == [False, True]
    assert diagnostics.variants[1].pass_index == 1
    assert diagnostics.quality_final > diagnostics.quality_initial
    assert result.payload["hook"] == refined_hook


def test_lower_scoring_refinement_is_rejected(monkeypatch) -> None:
    refined_hook = "Um gancho pior sobre margem e desconto"
    _install_scores(monkeypatch, {BASE_HOOK: (6.0, 6.5), refined_hook: (5.5, 6.0)})
    gateway = _ScriptedGateway(_linkedin(BASE_HOOK), [_linkedin(refined_hook)])

    diagnostics = orchestrator.run_task_generation(_context(gateway)).diagnostics

    assert diagnostics.refinement_applied is False
    assert diagnostics.selected_variant == 1
    assert diagnostics.variants[1].reason == "refinement_rejected: lower_score"
    assert diagnostics.quality_final == diagnostics.quality_initial


def test_forced_refinement_runs_first_pass_even_when_targets_are_met(monkeypatch) -> None:
    refined_hook = "Troque desconto por escopo antes da reuniao"
    _install_scores(monkeypatch, {BASE_HOOK: (9.0, 9.0), refined_hook: (9.1, 9.1)})
    gateway = _ScriptedGateway(_linkedin(BASE_HOOK), [_linkedin(refined_hook)])

    result = orchestrator.run_task_generation(_context(gateway, refine_passes=2), forced_refinement=True)
    diagnostics = result.diagnostics

    assert len(gateway.refine_prompts) == 1
    assert diagnostics.refine_passes_target == 2
    assert diagnostics.refine_passes_applied_count == 1
    assert diagnostics.details["refinement_log"][-1] == "pass 2: thresholds_met"


def test_targets_met_skips_refinement(monkeypatch) -> None:
    _install_scores(monkeypatch, {BASE_HOOK: (9.0, 9.0)})
    gateway = _ScriptedGateway(_linkedin(BASE_HOOK), [])

    diagnostics = orchestrator.run_task_generation(_context(gateway)).diagnostics

    assert gateway.refine_prompts == []
    assert diagnostics.refinement_requested is False
    assert diagnostics.meets_quality_threshold is True


def test_block_refinement_only_replaces_target_block(monkeypatch) -> None:
    refined_hook = "Desconto sem troca e margem jogada fora"
    _install_scores(monkeypatch, {BASE_HOOK: (6.0, 6.0), refined_hook: (6.2, 6.4)})
    refined = _linkedin(refined_hook)
    refined["body"] = ["Um corpo totalmente diferente do atual.", "Outro paragrafo que nao deve entrar."]
    gateway = _ScriptedGateway(_linkedin(BASE_HOOK), [refined])
    current = _linkedin(BASE_HOOK)

    def splice(base, candidate):
        updated, _ = set_block(base, "hook", get_block(candidate, "hook"))
        return updated

    result = orchestrator.run_block_refinement(_context(gateway), current, "hook", splice, ["BLOCO_ALVO: hook"])
    diagnostics = result.diagnostics

    assert diagnostics.details["reason"] == "block_regenerated:hook"
    assert diagnostics.variants[0].reason == "current_asset"
    assert result.payload["hook"] == refined_hook
    assert result.payload["body"] == current["body"]
    assert "BLOCO_ALVO: hook" in gateway.refine_prompts[0]


def test_splice_failure_marks_pass_schema_invalid(monkeypatch) -> None:
    _install_scores(monkeypatch, {BASE_HOOK: (6.0, 6.0)})
    gateway = _ScriptedGateway(_linkedin(BASE_HOOK), [_linkedin("Qualquer gancho novo para o bloco")])

    def splice(base, candidate):
        raise ValueError("evidence_only_violation")

    result = orchestrator.run_block_refinement(_context(gateway), _linkedin(BASE_HOOK), "hook", splice, [])

    assert result.diagnostics.refinement_applied is False
    assert result.diagnostics.variants[1].status == "schema_invalid"
    assert result.payload["hook"] == BASE_HOOK
