from __future__ import annotations

from dataclasses import dataclass
import http.client
import json
import logging
import os
import re
import threading
import time
from typing import Any, Callable
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

from .routing import AIRoute, provider_credentials

logger = logging.getLogger(__name__)

FAILURE_KINDS = ("auth_missing", "request_failed", "empty_response")

# USD per 1M tokens (prompt, completion); first match wins.
_OPENAI_PRICE_HINTS = (
    (re.compile(r"gpt-5(\.1)?$", re.IGNORECASE), 5.0, 15.0),
    (re.compile(r"gpt-5-mini", re.IGNORECASE), 0.5, 2.0),
    (re.compile(r"o4-mini", re.IGNORECASE), 3.0, 12.0),
    (re.compile(r"gpt-4\.1|gpt-4o", re.IGNORECASE), 5.0, 15.0),
)
_OPENROUTER_PRICE_HINTS = (
    (re.compile(r"claude-sonnet-4\.5", re.IGNORECASE), 3.0, 15.0),
    (re.compile(r"claude-3\.7|claude-3\.5", re.IGNORECASE), 3.0, 15.0),
    (re.compile(r"claude-opus", re.IGNORECASE), 15.0, 75.0),
    (re.compile(r"gemini-2\.5-pro", re.IGNORECASE), 2.5, 10.0),
    (re.compile(r"gemini-2\.5-flash", re.IGNORECASE), 0.35, 1.4),
    (re.compile(r"gpt-5(\.1)?$", re.IGNORECASE), 5.0, 15.0),
    (re.compile(r"gpt-5-mini", re.IGNORECASE), 0.5, 2.0),
    (re.compile(r"deepseek-v3|deepseek-r1", re.IGNORECASE), 0.55, 2.2),
)


@dataclass(frozen=True)
class LLMError(Exception):
    code: str
    message: str
    provider: str
    task_type: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.code}({self.provider}/{self.task_type}): {self.message}"


@dataclass(frozen=True)
class ProviderSuccess:
    text: str
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    actual_cost_usd: float | None = None
    latency_ms: float = 0.0

    ok = True


@dataclass(frozen=True)
class ProviderFailure:
    kind: str
    reason: str
    provider: str
    model: str

    ok = False


ProviderResult = ProviderSuccess | ProviderFailure


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def _first_number(*values: Any) -> float | None:
    for value in values:
        number = _to_number(value)
        if number is not None:
            return number
    return None


def _pick_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        parts = [part for part in (_pick_text(item) for item in value) if part]
        return "\n".join(parts).strip() or None
    if isinstance(value, dict):
        for key in ("text", "content", "output_text", "reasoning"):
            picked = _pick_text(value.get(key))
            if picked:
                return picked
    return None


def _send_temperature(provider: str, model: str) -> bool:
    # Reasoning variants reject an explicit temperature.
    return not (provider == "openai" and model.strip().lower().startswith("gpt-5"))


class ProviderGateway:
    """Uniform completion interface over the heuristic and OpenAI-compatible providers.

    Outcomes are returned as values; ``LLMError`` never escapes ``execute``.
    Calls are never retried here, retry policy belongs to the caller.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failures: dict[str, int] = {}
        self._breaker_until: dict[str, float] = {}
        self._metrics: dict[str, dict[str, float]] = {}

    def get_metrics_snapshot(self) -> dict[str, Any]:
        with self._lock:
            routes = {key: dict(bucket) for key, bucket in self._metrics.items()}
            breakers = {
                key: until for key, until in self._breaker_until.items() if until > time.time()
            }
        return {"routes": routes, "open_breakers": breakers}

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()
            self._breaker_until.clear()
            self._metrics.clear()

    def execute(
        self,
        route: AIRoute,
        system_prompt: str,
        user_prompt: str,
        *,
        task: str,
        kind: str = "generation",
        max_tokens: int | None = None,
        timeout_s: float = 120,
        heuristic: Callable[[], dict[str, Any]] | None = None,
    ) -> ProviderResult:
        if route.provider == "heuristic":
            if heuristic is None:
                return ProviderFailure(
                    kind="empty_response",
                    reason="heuristic provider has no builder for this call",
                    provider=route.provider,
                    model=route.model,
                )
            text = json.dumps(heuristic(), ensure_ascii=False)
            self._track_metrics(task, kind, route, success=True)
            return ProviderSuccess(text=text, provider=route.provider, model=route.model)

        credentials = provider_credentials(route.provider)
        if not credentials.api_key:
            return ProviderFailure(
                kind="auth_missing",
                reason=f"Missing API key for provider: {route.provider}",
                provider=route.provider,
                model=route.model,
            )

        breaker_key = f"{task}:{kind}:{route.provider}:{route.model}"
        now_ts = time.time()
        with self._lock:
            open_until = self._breaker_until.get(breaker_key, 0.0)
        if open_until > now_ts:
            return ProviderFailure(
                kind="request_failed",
                reason="circuit_open: breaker active for task/provider route",
                provider=route.provider,
                model=route.model,
            )

        payload = self._build_chat_payload(route, system_prompt, user_prompt, max_tokens)
        start = time.perf_counter()
        try:
            response = self._call_chat_completion(task, route, payload, timeout_s)
            error_message = self._choice_error(response)
            if error_message:
                raise LLMError(
                    code="choice_error",
                    message=error_message,
                    provider=route.provider,
                    task_type=task,
                )
        except LLMError as exc:
            self._record_failure(breaker_key, task, kind, route)
            logger.warning("provider call failed task=%s kind=%s error=%s", task, kind, exc)
            return ProviderFailure(
                kind="request_failed",
                reason=str(exc),
                provider=route.provider,
                model=route.model,
            )

        latency_ms = (time.perf_counter() - start) * 1000.0
        with self._lock:
            self._failures[breaker_key] = 0
        content = self._assistant_content(response)
        if not content:
            self._track_metrics(task, kind, route, success=False)
            return ProviderFailure(
                kind="empty_response",
                reason="LLM returned empty content",
                provider=route.provider,
                model=route.model,
            )
        usage = self._parse_usage(route, response)
        self._track_metrics(task, kind, route, success=True, latency_ms=latency_ms, **usage)
        return ProviderSuccess(
            text=content,
            provider=route.provider,
            model=route.model,
            prompt_tokens=int(usage["prompt_tokens"]),
            completion_tokens=int(usage["completion_tokens"]),
            total_tokens=int(usage["total_tokens"]),
            estimated_cost_usd=usage["estimated_cost_usd"],
            actual_cost_usd=usage["actual_cost_usd"],
            latency_ms=latency_ms,
        )

    def _build_chat_payload(
        self,
        route: AIRoute,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": route.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        if _send_temperature(route.provider, route.model):
            payload["temperature"] = route.temperature
        if max_tokens:
            key = "max_completion_tokens" if route.provider == "openai" else "max_tokens"
            payload[key] = max(1, int(max_tokens))
        return payload

    def _call_chat_completion(
        self,
        task_type: str,
        route: AIRoute,
        payload: dict[str, Any],
        timeout_s: float,
    ) -> dict[str, Any]:
        credentials = provider_credentials(route.provider)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credentials.api_key}",
        }
        headers.update(dict(credentials.extra_headers))
        req = urlrequest.Request(
            url=f"{credentials.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with urlrequest.urlopen(req, timeout=max(1.0, float(timeout_s))) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            if exc.code in {400, 422} and "response_format" in payload:
                fallback = dict(payload)
                fallback.pop("response_format", None)
                fallback["messages"] = payload["messages"] + [
                    {"role": "system", "content": "Return ONLY one valid JSON object."}
                ]
                return self._call_chat_completion(task_type, route, fallback, timeout_s)
            raise LLMError(
                code=f"http_{exc.code}",
                message=self._sanitize_error_message(detail),
                provider=route.provider,
                task_type=task_type,
                retryable=exc.code >= 500 or exc.code == 429,
            ) from exc
        except (URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
            raise LLMError(
                code="network_error",
                message=self._sanitize_error_message(str(exc) or repr(exc)),
                provider=route.provider,
                task_type=task_type,
                retryable=True,
            ) from exc
        except UnicodeDecodeError as exc:
            raise LLMError(
                code="invalid_envelope",
                message=f"LLM response body is not valid UTF-8: {exc.reason}",
                provider=route.provider,
                task_type=task_type,
            ) from exc
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LLMError(
                code="invalid_envelope",
                message=f"LLM request succeeded but returned invalid JSON envelope: {exc}",
                provider=route.provider,
                task_type=task_type,
            ) from exc
        if not isinstance(parsed, dict):
            raise LLMError(
                code="invalid_envelope",
                message="LLM response envelope is not an object",
                provider=route.provider,
                task_type=task_type,
            )
        return parsed

    def _choice_error(self, response: dict[str, Any]) -> str | None:
        choices = response.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        error = choices[0].get("error")
        if not isinstance(error, dict):
            return None
        message = _pick_text(error.get("message"))
        code = _pick_text(error.get("code"))
        if message and code:
            return f"Choice error ({code}): {message}"
        return f"Choice error: {message}" if message else "Choice error without message"

    def _assistant_content(self, response: dict[str, Any]) -> str | None:
        choices = response.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        message = choices[0].get("message")
        if not isinstance(message, dict):
            return None
        for key in ("content", "output_text", "reasoning"):
            picked = _pick_text(message.get(key))
            if picked:
                return picked
        return None

    def _parse_usage(self, route: AIRoute, response: dict[str, Any]) -> dict[str, Any]:
        usage = response.get("usage") if isinstance(response.get("usage"), dict) else {}
        data = response.get("data") if isinstance(response.get("data"), dict) else {}
        nested = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        prompt_tokens = _first_number(
            usage.get("prompt_tokens"),
            usage.get("input_tokens"),
            nested.get("prompt_tokens"),
            nested.get("input_tokens"),
        )
        completion_tokens = _first_number(
            usage.get("completion_tokens"),
            usage.get("output_tokens"),
            nested.get("completion_tokens"),
            nested.get("output_tokens"),
        )
        total_tokens = _first_number(usage.get("total_tokens"), nested.get("total_tokens"))
        if total_tokens is None:
            total_tokens = (prompt_tokens or 0.0) + (completion_tokens or 0.0)
        actual_cost = _first_number(
            usage.get("cost"),
            usage.get("total_cost"),
            usage.get("cost_usd"),
            response.get("cost"),
            nested.get("cost"),
            nested.get("total_cost"),
        )
        return {
            "prompt_tokens": prompt_tokens or 0.0,
            "completion_tokens": completion_tokens or 0.0,
            "total_tokens": total_tokens,
            "estimated_cost_usd": self._estimate_cost_usd(
                route, prompt_tokens or 0.0, completion_tokens or 0.0
            ),
            "actual_cost_usd": actual_cost,
        }

    def _estimate_cost_usd(self, route: AIRoute, prompt_tokens: float, completion_tokens: float) -> float:
        in_rate = float(os.getenv("LLM_PRICE_DEFAULT_INPUT_PER_1K", "0") or 0)
        out_rate = float(os.getenv("LLM_PRICE_DEFAULT_OUTPUT_PER_1K", "0") or 0)
        if in_rate > 0 or out_rate > 0:
            return round((prompt_tokens / 1000.0) * in_rate + (completion_tokens / 1000.0) * out_rate, 6)
        hints = _OPENAI_PRICE_HINTS if route.provider == "openai" else _OPENROUTER_PRICE_HINTS
        for pattern, prompt_rate, completion_rate in hints:
            if pattern.search(route.model):
                cost = (prompt_tokens / 1_000_000) * prompt_rate + (completion_tokens / 1_000_000) * completion_rate
                return round(cost, 6)
        return 0.0

    def _sanitize_error_message(self, message: str) -> str:
        text = (message or "").replace("\n", " ")
        text = re.sub(r"Bearer\s+\S+", "Bearer [redacted]", text)
        text = re.sub(r"sk-[A-Za-z0-9_\-]{8,}", "sk-[redacted]", text)
        return text[:300]

    def _record_failure(self, breaker_key: str, task: str, kind: str, route: AIRoute) -> None:
        threshold = int(os.getenv("LLM_BREAKER_THRESHOLD", "3") or 3)
        cooldown_s = float(os.getenv("LLM_BREAKER_COOLDOWN_S", "90") or 90)
        with self._lock:
            fail_count = self._failures.get(breaker_key, 0) + 1
            self._failures[breaker_key] = fail_count
            if threshold > 0 and fail_count >= threshold:
                self._breaker_until[breaker_key] = time.time() + cooldown_s
                logger.warning("circuit breaker opened route=%s failures=%s", breaker_key, fail_count)
        self._track_metrics(task, kind, route, success=False)

    def _track_metrics(
        self,
        task: str,
        kind: str,
        route: AIRoute,
        *,
        success: bool,
        latency_ms: float = 0.0,
        prompt_tokens: float = 0.0,
        completion_tokens: float = 0.0,
        total_tokens: float = 0.0,
        estimated_cost_usd: float = 0.0,
        actual_cost_usd: float | None = None,
    ) -> None:
        key = f"{task}|{kind}|{route.provider}|{route.model}"
        with self._lock:
            bucket = self._metrics.setdefault(
                key,
                {
                    "calls": 0.0,
                    "success": 0.0,
                    "errors": 0.0,
                    "latency_ms_total": 0.0,
                    "prompt_tokens_total": 0.0,
                    "completion_tokens_total": 0.0,
                    "estimated_cost_usd_total": 0.0,
                    "actual_cost_usd_total": 0.0,
                },
            )
            bucket["calls"] += 1
            if success:
                bucket["success"] += 1
                bucket["latency_ms_total"] += max(0.0, latency_ms)
                bucket["prompt_tokens_total"] += max(0.0, prompt_tokens)
                bucket["completion_tokens_total"] += max(0.0, completion_tokens)
                bucket["estimated_cost_usd_total"] += max(0.0, estimated_cost_usd)
                bucket["actual_cost_usd_total"] += max(0.0, actual_cost_usd or 0.0)
            else:
                bucket["errors"] += 1


_GATEWAY = ProviderGateway()


def get_gateway() -> ProviderGateway:
    return _GATEWAY
