from __future__ import annotations

import json
import re
import threading

import pytest

from generation import heuristic, orchestrator
from generation.heuristic import HeuristicResult
from generation.profile import load_profile
from generation.selector import RunCancelled
from generation.types import SUBSCORE_KEYS, TranscriptSegment
from llm.gateway import ProviderFailure, ProviderGateway, ProviderSuccess
from llm.routing import AIRoute
from prompts.catalog import PromptCatalog

_VARIATION = re.compile(r"Variacao (\d+)/\d+")


def _segments() -> list[TranscriptSegment]:
    lines = [
        "Hoje eu quero falar sobre o erro que mais custa margem em empresas de servico.",
        "O desconto sem criterio aparece em quase toda negociacao de fim de trimestre.",
        "Quando o vendedor nao tem uma tabela de concessoes ele cede no preco primeiro.",
        "A estrategia que funcionou para nossos clientes foi trocar desconto por escopo.",
        "Em tres meses a margem bruta voltou para 32% sem perder contratos importantes.",
        "O passo pratico e simples: defina antes o que voce aceita trocar na mesa.",
        "Depois treine o time para pedir algo em troca de cada concessao feita.",
        "Esse metodo transforma negociacao em processo e nao em improviso do vendedor.",
    ]
    return [
        TranscriptSegment(idx=index + 1, start_ms=index * 9000, end_ms=(index + 1) * 9000, text=text, tokens_est=16)
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


class _FakeGateway:
    """Scripted provider; ``script`` maps the 1-based variation number to a response."""

    def __init__(self, script: dict[int, object]) -> None:
        self.script = script
        self.calls: list[dict] = []
        self._lock = threading.Lock()
        self._real = ProviderGateway()

    def execute(self, route, system_prompt, user_prompt, *, task, kind="generation", **kwargs):
        if route.provider == "heuristic":
            return self._real.execute(route, system_prompt, user_prompt, task=task, kind=kind, **kwargs)
        with self._lock:
            self.calls.append({"kind": kind, "user_prompt": user_prompt})
        match = _VARIATION.search(user_prompt)
        reply = self.script[int(match.group(1)) if match else 0]
        if isinstance(reply, ProviderFailure):
            return reply
        text = reply if isinstance(reply, str) else json.dumps(reply, ensure_ascii=False)
        return ProviderSuccess(
            text=text,
            provider=route.provider,
            model=route.model,
            prompt_tokens=100,
            completion_tokens=50,
            total_tokens=150,
        )


def _failure(kind: str = "request_failed") -> ProviderFailure:
    return ProviderFailure(kind=kind, reason=f"{kind}: boom", provider="openai", model="gpt-5-mini")


def _context(gateway, profile_data: dict, cancel_check=None):
    profile = load_profile(profile_data)
    return orchestrator.build_context(
        "linkedin",
        _segments(),
        profile,
        PromptCatalog().active("linkedin"),
        route=AIRoute(provider="openai", model="gpt-5-mini", temperature=0.3),
        judge_route=AIRoute(provider="openai", model="gpt-5-mini", temperature=0.0),
        gateway=gateway,
        cancel_check=cancel_check,
    )


def _flat_scores(monkeypatch, by_hook: dict[str, float] | None = None, default: float = 6.0) -> None:
    def _score(task, payload, evidence, task_profile=None, segments=()):
        value = (by_hook or {}).get(payload.get("hook"), default)
        return HeuristicResult(score=value, subscores={key: value for key in SUBSCORE_KEYS}, issues=[])

    monkeypatch.setattr(heuristic, "score", _score)
    monkeypatch.setattr(heuristic, "validate_payload", lambda *args, **kwargs: [])


@pytest.fixture(autouse=True)
def _openai_key(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("OPENAI_API_KEY_FILE", raising=False)


def test_single_valid_variant_is_selected_with_judge_disabled(monkeypatch) -> None:
    _flat_scores(monkeypatch, default=6.0)
    gateway = _FakeGateway({1: "{}", 2: _linkedin("Sua margem some na mesa de negociacao"), 3: "nao e json"})
    ctx = _context(gateway, {"quality": {"mode": "standard", "variationCount": 3}})

    result = orchestrator.run_task_generation(ctx)
    diagnostics = result.diagnostics

    assert diagnostics.status == "completed"
    assert [variant.status for variant in diagnostics.variants] == ["schema_invalid", "ok", "schema_invalid"]
    assert [variant.index for variant in diagnostics.variants if variant.selected] == [2]
    assert diagnostics.quality_initial == 6.0
    assert diagnostics.used_heuristic_fallback is False
    assert diagnostics.judge_quality_score is None
    assert diagnostics.details["judge_unavailable_reason"] == "judge_disabled_standard_mode"
    assert diagnostics.refinement_requested is False
    assert result.payload["hook"] == "Sua margem some na mesa de negociacao"


def test_missing_credential_falls_back_to_single_heuristic_variant(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    ctx = _context(ProviderGateway(), {"quality": {"mode": "max", "variationCount": 4}})

    result = orchestrator.run_task_generation(ctx)
    diagnostics = result.diagnostics

    assert diagnostics.used_heuristic_fallback is True
    assert diagnostics.fallback_reason == "auth_missing"
    assert len(diagnostics.variants) == 1
    assert diagnostics.provider == "heuristic"
    assert diagnostics.details["routed_provider"] == "openai"
    assert diagnostics.details["refinement"] == "refinement_skipped: heuristic_route"
    assert result.payload is not None


def test_highest_composite_wins_and_ties_go_to_lowest_index(monkeypatch) -> None:
    hooks = {
        1: "Gancho medio sobre margem de servico",
        2: "Gancho forte sobre desconto e escopo",
        3: "Gancho empatado sobre desconto e escopo",
    }
    _flat_scores(monkeypatch, by_hook={hooks[1]: 5.0, hooks[2]: 7.5, hooks[3]: 7.5})
    gateway = _FakeGateway({index: _linkedin(hook) for index, hook in hooks.items()})
    ctx = _context(gateway, {"quality": {"mode": "standard", "variationCount": 3}})

    diagnostics = orchestrator.run_task_generation(ctx).diagnostics

    assert diagnostics.selected_variant == 2
    assert sum(variant.selected for variant in diagnostics.variants) == 1
    assert [variant.composite_score for variant in diagnostics.variants] == [5.0, 7.5, 7.5]


def test_duplicate_payloads_are_marked_invalid(monkeypatch) -> None:
    _flat_scores(monkeypatch)
    same = _linkedin("Sua margem some na mesa de negociacao")
    gateway = _FakeGateway({1: same, 2: same, 3: same})
    ctx = _context(gateway, {"quality": {"mode": "standard", "variationCount": 3}})

    diagnostics = orchestrator.run_task_generation(ctx).diagnostics

    assert diagnostics.variants[0].selected is True
    assert [variant.reason for variant in diagnostics.variants[1:]] == ["duplicate_candidate", "duplicate_candidate"]


def test_all_schema_invalid_blocks_the_task(monkeypatch) -> None:
    _flat_scores(monkeypatch)
    gateway = _FakeGateway({1: "{}", 2: "{}"})
    ctx = _context(gateway, {"quality": {"mode": "standard", "variationCount": 2}})

    result = orchestrator.run_task_generation(ctx)

    assert result.blocked is True
    assert result.diagnostics.status == "blocked"
    assert all(variant.status == "schema_invalid" for variant in result.diagnostics.variants)
    assert not any(variant.selected for variant in result.diagnostics.variants)


def test_all_failures_append_heuristic_variant(monkeypatch) -> None:
    gateway = _FakeGateway({1: _failure("request_failed"), 2: _failure("empty_response")})
    ctx = _context(gateway, {"quality": {"mode": "standard", "variationCount": 2}})

    diagnostics = orchestrator.run_task_generation(ctx).diagnostics

    assert diagnostics.used_heuristic_fallback is True
    assert diagnostics.fallback_reason == "request_failed"
    assert [variant.index for variant in diagnostics.variants] == [1, 2, 3]
    assert diagnostics.selected_variant == 3


def test_blocking_issue_rejects_network_variant(monkeypatch) -> None:
    _flat_scores(monkeypatch)
    monkeypatch.setattr(
        heuristic,
        "validate_payload",
        lambda task, payload, *args, **kwargs: ["hook: truncation_artifact"] if "99%" in payload["hook"] else [],
    )
    gateway = _FakeGateway(
        {1: _linkedin("Margem subiu 99% em uma semana"), 2: _linkedin("Sua margem some na mesa de negociacao")}
    )
    ctx = _context(gateway, {"quality": {"mode": "standard", "variationCount": 2}})

    diagnostics = orchestrator.run_task_generation(ctx).diagnostics

    assert diagnostics.variants[0].status == "schema_invalid"
    assert diagnostics.variants[0].reason.startswith("quality_guard:")
    assert diagnostics.selected_variant == 2


def test_usage_is_aggregated_over_variants(monkeypatch) -> None:
    _flat_scores(monkeypatch)
    gateway = _FakeGateway(
        {1: _linkedin("Gancho um sobre margem e desconto"), 2: _linkedin("Gancho dois sobre escopo e margem")}
    )
    ctx = _context(gateway, {"quality": {"mode": "standard", "variationCount": 2}})

    diagnostics = orchestrator.run_task_generation(ctx).diagnostics

    assert diagnostics.prompt_tokens == 200
    assert diagnostics.total_tokens == 300


def test_cancelled_run_raises(monkeypatch) -> None:
    _flat_scores(monkeypatch)
    gateway = _FakeGateway({1: _linkedin("Gancho um sobre margem e desconto")})
    ctx = _context(gateway, {"quality": {"mode": "standard", "variationCount": 1}}, cancel_check=lambda: True)

    with pytest.raises(RunCancelled):
        orchestrator.run_task_generation(ctx)


class _JudgeDownGateway(_FakeGateway):
    def execute(self, route, system_prompt, user_prompt, *, task, kind="generation", **kwargs):
        if kind == "judge":
            return _failure("request_failed")
        return super().execute(route, system_prompt, user_prompt, task=task, kind=kind, **kwargs)


def test_judge_failure_is_recorded_on_every_variant(monkeypatch) -> None:
    _flat_scores(monkeypatch)
    gateway = _JudgeDownGateway(
        {
            0: _failure("request_failed"),
            1: _linkedin("Gancho um sobre margem e desconto"),
            2: _linkedin("Gancho dois sobre escopo e margem"),
        }
    )
    ctx = _context(gateway, {"quality": {"mode": "max", "variationCount": 2}})

    diagnostics = orchestrator.run_task_generation(ctx).diagnostics
    first_pass = [variant for variant in diagnostics.variants if variant.pass_index == 0]

    assert [variant.status for variant in first_pass] == ["ok", "ok"]
    assert all(variant.judge_score is None for variant in first_pass)
    assert all(variant.reason and variant.reason.startswith("judge_") for variant in first_pass)
    assert diagnostics.details["judge_unavailable_reason"] == first_pass[0].reason
