from __future__ import annotations

from llm.routing import AIRoute, load_route, load_routing, route_from_dict, task_max_tokens, task_timeout_s


def _clear_keys(monkeypatch) -> None:
    for name in ("OPENAI_API_KEY", "OPENAI_API_KEY_FILE", "OPENROUTER_API_KEY", "OPENROUTER_API_KEY_FILE"):
        monkeypatch.delenv(name, raising=False)


def test_generation_route_defaults_to_heuristic(monkeypatch) -> None:
    _clear_keys(monkeypatch)
    monkeypatch.delenv("LLM_ROUTE_REELS_PROVIDER", raising=False)
    monkeypatch.delenv("LLM_ROUTE_DEFAULT_PROVIDER", raising=False)

    route = load_route("reels")

    assert route == AIRoute(provider="heuristic", model="heuristic-v1", temperature=0.3)


def test_task_route_overrides_default(monkeypatch) -> None:
    monkeypatch.setenv("LLM_ROUTE_DEFAULT_PROVIDER", "openai")
    monkeypatch.setenv("LLM_ROUTE_X_PROVIDER", "openrouter")
    monkeypatch.setenv("LLM_ROUTE_X_MODEL", "anthropic/claude-sonnet-4.5")
    monkeypatch.setenv("LLM_ROUTE_X_TEMPERATURE", "9")

    route = load_route("x")

    assert route.provider == "openrouter"
    assert route.model == "anthropic/claude-sonnet-4.5"
    assert route.temperature == 1.5


def test_judge_route_prefers_configured_network_provider(monkeypatch) -> None:
    _clear_keys(monkeypatch)
    monkeypatch.delenv("LLM_JUDGE_ROUTE_LINKEDIN_PROVIDER", raising=False)
    monkeypatch.delenv("LLM_JUDGE_ROUTE_DEFAULT_PROVIDER", raising=False)
    monkeypatch.setenv("OPENROUTER_API_KEY", "or-key")

    route = load_route("linkedin", "judge")

    assert route.provider == "openrouter"
    assert route.temperature == 0.2


def test_route_from_dict_falls_back_on_unknown_provider() -> None:
    fallback = AIRoute(provider="openai", model="gpt-5-mini", temperature=0.3)

    assert route_from_dict({"provider": "mystery"}, fallback) == fallback
    switched = route_from_dict({"provider": "openrouter"}, fallback)
    assert switched.model == "openrouter/auto"


def test_limits_honour_env_and_defaults(monkeypatch) -> None:
    monkeypatch.setenv("LLM_ROUTE_ANALYSIS_TIMEOUT_S", "45")
    monkeypatch.setenv("LLM_ROUTE_NEWSLETTER_MAX_TOKENS", "oops")

    assert task_timeout_s("analysis") == 45
    assert task_timeout_s("reels", "judge") == 95
    assert task_max_tokens("newsletter") == 7000


def test_stored_override_wins_over_environment(monkeypatch) -> None:
    monkeypatch.setenv("LLM_ROUTE_LINKEDIN_PROVIDER", "openai")
    monkeypatch.setenv("LLM_ROUTE_LINKEDIN_TEMPERATURE", "0.4")

    stored = {("generation", "linkedin"): {"provider": "openrouter", "model": "openrouter/auto"}}
    routing = load_routing(stored)

    assert routing.generation["linkedin"] == AIRoute(provider="openrouter", model="openrouter/auto", temperature=0.4)
    assert routing.generation["x"] == load_route("x")
    assert load_route("linkedin", "generation", {"provider": "heuristic", "model": "ignored"}).model == "heuristic-v1"
