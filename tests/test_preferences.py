from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

import pytest
from pydantic import ValidationError

import generation.service as service
from db.models import AIRouteOverride, AuditEvent, SrtAsset, WorkspacePreference
from generation.preferences import (
    PreferenceError,
    get_preferences,
    resolve_route,
    update_preferences,
    update_routing,
    workspace_profile,
)
from generation.profile import load_profile
from generation.types import TranscriptSegment


class _FakeSession:
    def __init__(self, srt_asset: SrtAsset | None = None) -> None:
        self.srt_asset = srt_asset
        self.routes: dict[tuple[str, str], AIRouteOverride] = {}
        self.preference: WorkspacePreference | None = None
        self.added: list[object] = []
        self.locked: list[type] = []
        self.commits = 0
        self.rollbacks = 0

    def get(self, model, key, with_for_update: bool = False):
        if with_for_update:
            self.locked.append(model)
        if model is AIRouteOverride:
            return self.routes.get(key)
        if model is WorkspacePreference:
            return self.preference if self.preference is not None and self.preference.id == key else None
        if model is SrtAsset and self.srt_asset is not None and self.srt_asset.id == key:
            return self.srt_asset
        return None

    def scalars(self, stmt):
        return SimpleNamespace(all=lambda: list(self.routes.values()))

    def scalar(self, stmt):
        return self.srt_asset.revision if self.srt_asset is not None else None

    def add(self, obj):
        self.added.append(obj)
        if isinstance(obj, AIRouteOverride):
            self.routes[(obj.kind, obj.task)] = obj
        if isinstance(obj, WorkspacePreference):
            self.preference = obj

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def refresh(self, _obj):
        return None

    def close(self):
        return None

    def audit_types(self) -> list[str]:
        return [obj.event_type for obj in self.added if isinstance(obj, AuditEvent)]


@pytest.fixture(autouse=True)
def _env_routes(monkeypatch) -> None:
    for name in ("OPENAI_API_KEY", "OPENAI_API_KEY_FILE", "OPENROUTER_API_KEY", "OPENROUTER_API_KEY_FILE"):
        monkeypatch.delenv(name, raising=False)
    for prefix in ("LLM_ROUTE", "LLM_JUDGE_ROUTE"):
        for key in ("LINKEDIN", "X", "DEFAULT"):
            for field in ("PROVIDER", "MODEL", "TEMPERATURE"):
                monkeypatch.delenv(f"{prefix}_{key}_{field}", raising=False)


def _srt_asset(profile: dict | None = None, revision: int = 3) -> SrtAsset:
    return SrtAsset(id=uuid4(), revision=revision, status="ready", generation_profile=profile)


def test_route_override_is_stored_and_wins_over_environment() -> None:
    session = _FakeSession()

    body = update_routing(
        session,
        routing={"linkedin": {"provider": "openrouter", "temperature": 0.9}},
        judge_routing={"linkedin": {"provider": "openai"}},
    )

    assert body["routing"]["linkedin"] == {"provider": "openrouter", "model": "openrouter/auto", "temperature": 0.9}
    assert body["judge_routing"]["linkedin"] == {"provider": "openai", "model": "gpt-5-mini", "temperature": 0.2}
    assert body["routing"]["x"]["provider"] == "heuristic"
    assert body["overrides"] == ["generation:linkedin", "judge:linkedin"]
    assert body["configured_keys"] == {"openai": False, "openrouter": False}
    assert resolve_route(session, "linkedin", "generation").provider == "openrouter"
    assert resolve_route(session, "x", "generation").provider == "heuristic"
    assert session.commits == 1
    assert session.audit_types() == ["ai_routing_updated"]


def test_partial_route_patch_keeps_the_stored_provider() -> None:
    session = _FakeSession()
    update_routing(session, routing={"linkedin": {"provider": "openrouter", "model": "anthropic/claude-sonnet-4.5"}})

    body = update_routing(session, routing={"linkedin": {"temperature": 0.1}})

    assert body["routing"]["linkedin"] == {
        "provider": "openrouter",
        "model": "anthropic/claude-sonnet-4.5",
        "temperature": 0.1,
    }
    assert AIRouteOverride in session.locked


@pytest.mark.parametrize(
    ("patch", "code"),
    [
        ({"podcast": {"provider": "openai"}}, "unknown_task"),
        ({"x": {"provider": "mystery"}}, "unknown_provider"),
        ({"x": "openai"}, "invalid_route"),
    ],
)
def test_bad_route_patches_are_rejected_before_writing(patch: dict, code: str) -> None:
    session = _FakeSession()

    with pytest.raises(PreferenceError) as excinfo:
        update_routing(session, routing=patch)

    assert excinfo.value.code == code
    assert session.routes == {}
    assert session.commits == 0


def test_stored_preferences_become_the_default_profile() -> None:
    session = _FakeSession()

    update_preferences(session, {"quality": {"mode": "standard"}, "tasks": {"x": {"length": "short"}}})
    update_preferences(session, {"quality": {"refinePasses": 1}})
    profile = workspace_profile(session)

    assert profile.quality.mode == "standard"
    assert profile.quality.refine_passes == 1
    assert profile.tasks["x"].length == "short"
    assert load_profile({"quality": {"variationCount": 2}}, base=profile).quality.mode == "standard"
    assert get_preferences(session)["generation_profile"]["quality"]["mode"] == "standard"
    assert session.audit_types() == ["ai_preferences_updated", "ai_preferences_updated"]


def test_invalid_preferences_raise_and_store_nothing() -> None:
    session = _FakeSession()

    with pytest.raises(ValidationError):
        update_preferences(session, {"quality": {"mode": "turbo"}})

    assert session.preference is None
    assert session.rollbacks == 1
    assert workspace_profile(session).quality.mode == "max"


def test_task_runs_start_from_the_stored_default(monkeypatch) -> None:
    srt = _srt_asset(profile=None)
    session = _FakeSession(srt)
    segments = [TranscriptSegment(idx=1, start_ms=0, end_ms=9000, text="Margem some na mesa de negociacao.")]
    monkeypatch.setattr(service, "load_segments", lambda _session, _id: segments)
    update_preferences(session, {"quality": {"mode": "standard", "variationCount": 2}})

    _, _, resolved = service._prepare(session, srt.id, "x", None)

    assert resolved.quality.mode == "standard"
    assert resolved.quality.variation_count == 2


def test_asset_profile_update_bumps_revision_and_cancels_running_work() -> None:
    srt = _srt_asset(profile={"quality": {"mode": "max"}}, revision=3)
    session = _FakeSession(srt)
    watch = service.revision_watch(srt.id, srt.revision, session_factory=lambda: session, min_interval_s=0.0)
    assert watch() is False

    updated = service.update_asset_profile(session, srt.id, {"quality": {"variationCount": 2}})

    assert updated.revision == 4
    assert updated.generation_profile["quality"]["mode"] == "max"
    assert updated.generation_profile["quality"]["variationCount"] == 2
    assert SrtAsset in session.locked
    assert session.audit_types() == ["srt_profile_updated"]
    assert watch() is True


def test_invalid_asset_profile_leaves_revision_untouched() -> None:
    srt = _srt_asset(profile=None, revision=3)
    session = _FakeSession(srt)

    with pytest.raises(ValidationError):
        service.update_asset_profile(session, srt.id, {"tasks": {"podcast": {"length": "short"}}})

    assert srt.revision == 3
    assert srt.generation_profile is None
    assert session.rollbacks == 1


def test_profile_update_for_unknown_asset_is_not_found() -> None:
    with pytest.raises(service.AssetNotFound):
        service.update_asset_profile(_FakeSession(), uuid4(), {"quality": {"mode": "standard"}})
