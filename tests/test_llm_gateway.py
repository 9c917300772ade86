from __future__ import annotations

import http.client

import llm.gateway as gateway_module
from llm.gateway import LLMError, ProviderGateway
from llm.routing import AIRoute


def _openai_route() -> AIRoute:
    return AIRoute(provider="openai", model="gpt-5-mini", temperature=0.3)


def test_heuristic_route_returns_builder_output_without_network() -> None:
    gateway = ProviderGateway()
    route = AIRoute(provider="heuristic", model="heuristic-v1", temperature=0.0)

    result = gateway.execute(route, "sys", "user", task="x", heuristic=lambda: {"standalone": ["a"]})

    assert result.ok is True
    assert result.provider == "heuristic"
    assert '"standalone"' in result.text
    assert result.total_tokens == 0


def test_missing_key_is_auth_missing_failure(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY_FILE", raising=False)
    gateway = ProviderGateway()

    result = gateway.execute(_openai_route(), "sys", "user", task="linkedin")

    assert result.ok is False
    assert result.kind == "auth_missing"


def test_key_file_is_honoured(monkeypatch, tmp_path) -> None:
    secret = tmp_path / "openai.key"
    secret.write_text("sk-file-secret\n")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY_FILE", str(secret))
    gateway = ProviderGateway()
    monkeypatch.setattr(
        gateway,
        "_call_chat_completion",
        lambda task, route, payload, timeout_s: {"choices": [{"message": {"content": "{\"ok\": true}"}}]},
    )

    result = gateway.execute(_openai_route(), "sys", "user", task="x")

    assert result.ok is True


def test_success_parses_usage_and_estimates_cost(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("LLM_PRICE_DEFAULT_INPUT_PER_1K", "0.001")
    monkeypatch.setenv("LLM_PRICE_DEFAULT_OUTPUT_PER_1K", "0.002")
    gateway = ProviderGateway()
    captured: dict = {}

    def _fake_call(task, route, payload, timeout_s):
        captured["payload"] = payload
        captured["timeout_s"] = timeout_s
        return {
            "choices": [{"message": {"content": "{\"hook\": \"ok\"}"}}],
            "usage": {"prompt_tokens": 1000, "completion_tokens": 500, "cost": 0.0042},
        }

    monkeypatch.setattr(gateway, "_call_chat_completion", _fake_call)

    result = gateway.execute(_openai_route(), "sys", "user", task="linkedin", max_tokens=900, timeout_s=33)

    assert result.ok is True
    assert result.prompt_tokens == 1000
    assert result.completion_tokens == 500
    assert result.total_tokens == 1500
    assert result.estimated_cost_usd == 0.002
    assert result.actual_cost_usd == 0.0042
    assert captured["timeout_s"] == 33
    assert captured["payload"]["max_completion_tokens"] == 900
    # gpt-5 models reject an explicit temperature
    assert "temperature" not in captured["payload"]


def test_empty_content_is_empty_response(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    gateway = ProviderGateway()
    monkeypatch.setattr(
        gateway,
        "_call_chat_completion",
        lambda task, route, payload, timeout_s: {"choices": [{"message": {"content": "   "}}]},
    )

    result = gateway.execute(_openai_route(), "sys", "user", task="x")

    assert result.ok is False
    assert result.kind == "empty_response"


def test_choice_error_becomes_request_failed(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    gateway = ProviderGateway()
    monkeypatch.setattr(
        gateway,
        "_call_chat_completion",
        lambda task, route, payload, timeout_s: {"choices": [{"error": {"code": "429", "message": "slow down"}}]},
    )

    result = gateway.execute(_openai_route(), "sys", "user", task="x")

    assert result.ok is False
    assert result.kind == "request_failed"
    assert "slow down" in result.reason


def test_breaker_opens_after_threshold_failures(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("LLM_BREAKER_THRESHOLD", "2")
    monkeypatch.setenv("LLM_BREAKER_COOLDOWN_S", "60")
    gateway = ProviderGateway()
    calls = {"count": 0}

    def _failing_call(task, route, payload, timeout_s):
        calls["count"] += 1
        raise LLMError(code="network_error", message="boom", provider=route.provider, task_type=task, retryable=True)

    monkeypatch.setattr(gateway, "_call_chat_completion", _failing_call)

    first = gateway.execute(_openai_route(), "sys", "user", task="x")
    second = gateway.execute(_openai_route(), "sys", "user", task="x")
    third = gateway.execute(_openai_route(), "sys", "user", task="x")

    assert first.kind == second.kind == third.kind == "request_failed"
    assert third.reason.startswith("circuit_open")
    assert calls["count"] == 2
    snapshot = gateway.get_metrics_snapshot()
    assert snapshot["open_breakers"]
    bucket = snapshot["routes"]["x|generation|openai|gpt-5-mini"]
    assert bucket["errors"] == 2


def test_error_messages_are_sanitised() -> None:
    gateway = ProviderGateway()

    cleaned = gateway._sanitize_error_message("Bearer sk-abcdefghijkl failed\nline two " + "x" * 400)

    assert "sk-abcdefghijkl" not in cleaned
    assert "\n" not in cleaned
    assert len(cleaned) == 300


class _FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def test_undecodable_body_is_request_failed(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(gateway_module.urlrequest, "urlopen", lambda req, timeout: _FakeResponse(b"\xff\xfe{}"))
    gateway = ProviderGateway()

    result = gateway.execute(_openai_route(), "sys", "user", task="linkedin")

    assert result.ok is False
    assert result.kind == "request_failed"
    assert "invalid_envelope" in result.reason


def test_truncated_body_is_request_failed(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    def _truncated(req, timeout):
        raise http.client.IncompleteRead(b"{")

    monkeypatch.setattr(gateway_module.urlrequest, "urlopen", _truncated)
    gateway = ProviderGateway()

    result = gateway.execute(_openai_route(), "sys", "user", task="linkedin")

    assert result.ok is False
    assert result.kind == "request_failed"
    assert "network_error" in result.reason
    assert gateway.get_metrics_snapshot()["routes"]["linkedin|generation|openai|gpt-5-mini"]["errors"] == 1
