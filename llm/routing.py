from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

TASKS = ("analysis", "reels", "newsletter", "linkedin", "x")
PROVIDERS = ("heuristic", "openai", "openrouter")
NETWORK_PROVIDERS = ("openai", "openrouter")

_DEFAULT_MODELS = {
    "openai": "gpt-5-mini",
    "openrouter": "openrouter/auto",
    "heuristic": "heuristic-v1",
}

_TASK_TIMEOUT_S = {
    "analysis": 300,
    "reels": 240,
    "newsletter": 240,
    "linkedin": 220,
    "x": 240,
}

_JUDGE_TIMEOUT_S = {
    "analysis": 120,
    "reels": 95,
    "newsletter": 95,
    "linkedin": 90,
    "x": 90,
}

_TASK_MAX_TOKENS = {
    "analysis": 6500,
    "reels": 5200,
    "newsletter": 7000,
    "linkedin": 5000,
    "x": 7000,
}

JUDGE_MAX_TOKENS = 700


@dataclass(frozen=True)
class AIRoute:
    provider: str
    model: str
    temperature: float


@dataclass(frozen=True)
class AIRouting:
    generation: dict[str, AIRoute]
    judge: dict[str, AIRoute]


@dataclass(frozen=True)
class ProviderCredentials:
    provider: str
    base_url: str
    api_key: str
    extra_headers: tuple[tuple[str, str], ...] = ()


def read_secret(name: str) -> str:
    """Read ``name`` from the environment, falling back to ``<name>_FILE``."""
    direct = os.getenv(name, "").strip()
    if direct:
        return direct
    file_path = os.getenv(f"{name}_FILE", "").strip()
    if not file_path:
        return ""
    try:
        return Path(file_path).read_text().strip()
    except OSError:
        return ""


def default_model(provider: str) -> str:
    return _DEFAULT_MODELS.get(provider, _DEFAULT_MODELS["heuristic"])


def provider_credentials(provider: str) -> ProviderCredentials:
    provider = provider.lower().strip()
    if provider == "openrouter":
        headers: list[tuple[str, str]] = []
        referer = os.getenv("OPENROUTER_HTTP_REFERER", "").strip()
        if referer:
            headers.append(("HTTP-Referer", referer))
        headers.append(("X-Title", os.getenv("OPENROUTER_APP_NAME", "Authority Engine")))
        return ProviderCredentials(
            provider=provider,
            base_url=os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").strip().rstrip("/"),
            api_key=read_secret("OPENROUTER_API_KEY"),
            extra_headers=tuple(headers),
        )
    if provider == "openai":
        return ProviderCredentials(
            provider=provider,
            base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip().rstrip("/"),
            api_key=read_secret("OPENAI_API_KEY"),
        )
    return ProviderCredentials(provider=provider, base_url="", api_key="")


def is_provider_configured(provider: str) -> bool:
    if provider == "heuristic":
        return True
    return bool(provider_credentials(provider).api_key)


def _normalize_provider(raw: str | None) -> str | None:
    if raw is None:
        return None
    value = raw.strip().lower()
    return value if value in PROVIDERS else None


def _parse_temperature(raw: str | None, default: float) -> float:
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(0.0, min(1.5, value))


def _default_judge_provider() -> str:
    for provider in NETWORK_PROVIDERS:
        if is_provider_configured(provider):
            return provider
    return "heuristic"


def load_route(task: str, kind: str = "generation", stored: dict | None = None) -> AIRoute:
    """Environment route for ``task``; a ``stored`` override (provider, model, temperature) wins over it."""
    prefix = "LLM_JUDGE_ROUTE" if kind == "judge" else "LLM_ROUTE"
    key = task.upper()
    provider = _normalize_provider(os.getenv(f"{prefix}_{key}_PROVIDER")) or _normalize_provider(
        os.getenv(f"{prefix}_DEFAULT_PROVIDER")
    )
    if provider is None:
        provider = _default_judge_provider() if kind == "judge" else "heuristic"
    model = (
        os.getenv(f"{prefix}_{key}_MODEL", "").strip()
        or os.getenv(f"{prefix}_DEFAULT_MODEL", "").strip()
        or default_model(provider)
    )
    if provider == "heuristic":
        model = default_model("heuristic")
    default_temperature = 0.2 if kind == "judge" else 0.3
    temperature = _parse_temperature(
        os.getenv(f"{prefix}_{key}_TEMPERATURE") or os.getenv(f"{prefix}_DEFAULT_TEMPERATURE"),
        default_temperature,
    )
    route = AIRoute(provider=provider, model=model, temperature=temperature)
    return route_from_dict(stored, route) if stored else route


def load_routing(stored: dict[tuple[str, str], dict] | None = None) -> AIRouting:
    """Both route maps; ``stored`` is keyed by ``(kind, task)``."""
    stored = stored or {}
    return AIRouting(
        generation={task: load_route(task, "generation", stored.get(("generation", task))) for task in TASKS},
        judge={task: load_route(task, "judge", stored.get(("judge", task))) for task in TASKS},
    )


def route_from_dict(data: dict | None, fallback: AIRoute) -> AIRoute:
    if not isinstance(data, dict):
        return fallback
    provider = _normalize_provider(str(data.get("provider", ""))) or fallback.provider
    model = str(data.get("model") or "").strip() or (
        fallback.model if provider == fallback.provider else default_model(provider)
    )
    if provider == "heuristic":
        model = default_model("heuristic")
    temperature = _parse_temperature(
        str(data["temperature"]) if data.get("temperature") is not None else None,
        fallback.temperature,
    )
    return AIRoute(provider=provider, model=model, temperature=temperature)


def task_timeout_s(task: str, kind: str = "generation") -> int:
    prefix = "LLM_JUDGE_ROUTE" if kind == "judge" else "LLM_ROUTE"
    defaults = _JUDGE_TIMEOUT_S if kind == "judge" else _TASK_TIMEOUT_S
    raw = os.getenv(f"{prefix}_{task.upper()}_TIMEOUT_S", "")
    try:
        return max(5, int(raw)) if raw.strip() else defaults.get(task, 120)
    except ValueError:
        return defaults.get(task, 120)


def task_max_tokens(task: str) -> int:
    raw = os.getenv(f"LLM_ROUTE_{task.upper()}_MAX_TOKENS", "")
    try:
        return max(1, int(raw)) if raw.strip() else _TASK_MAX_TOKENS.get(task, 4000)
    except ValueError:
        return _TASK_MAX_TOKENS.get(task, 4000)
