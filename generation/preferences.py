"""Workspace-wide AI preferences: per-task route overrides and the default generation profile.

Both live in the database so the API and every rq worker resolve the same
routes and profile. Environment variables only provide the starting point.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models import AIRouteOverride, AuditEvent, WorkspacePreference
from llm.routing import (
    NETWORK_PROVIDERS,
    PROVIDERS,
    TASKS,
    AIRoute,
    is_provider_configured,
    load_route,
    load_routing,
    route_from_dict,
)
from .profile import GenerationProfile, default_profile, load_profile

logger = logging.getLogger(__name__)

ROUTE_KINDS = ("generation", "judge")
_PREFERENCES_ID = "global"


class PreferenceError(ValueError):
    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


def _override_dict(row: AIRouteOverride) -> dict[str, Any]:
    return {"provider": row.provider, "model": row.model, "temperature": row.temperature}


def _route_dict(route: AIRoute) -> dict[str, Any]:
    return {"provider": route.provider, "model": route.model, "temperature": route.temperature}


def resolve_route(session: Session, task: str, kind: str = "generation") -> AIRoute:
    row = session.get(AIRouteOverride, (kind, task))
    return load_route(task, kind, _override_dict(row) if row is not None else None)


def get_routing(session: Session) -> dict[str, Any]:
    stored = {(row.kind, row.task): _override_dict(row) for row in session.scalars(select(AIRouteOverride)).all()}
    routing = load_routing(stored)
    return {
        "routing": {task: _route_dict(route) for task, route in routing.generation.items()},
        "judge_routing": {task: _route_dict(route) for task, route in routing.judge.items()},
        "overrides": sorted(f"{kind}:{task}" for kind, task in stored),
        "configured_keys": {provider: is_provider_configured(provider) for provider in NETWORK_PROVIDERS},
    }


def _check_route_patch(patch: dict[str, Any]) -> None:
    for task, fields in patch.items():
        if task not in TASKS:
            raise PreferenceError("unknown_task", f"unknown task in routing patch: {task}")
        if not isinstance(fields, dict):
            raise PreferenceError("invalid_route", f"route for {task} must be an object")
        provider = fields.get("provider")
        if provider is not None and str(provider).strip().lower() not in PROVIDERS:
            raise PreferenceError("unknown_provider", f"unknown provider for {task}: {provider}")


def update_routing(
    session: Session,
    routing: dict[str, Any] | None = None,
    judge_routing: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Merge partial route patches into the stored overrides and return the resolved maps."""
    patches = {"generation": routing or {}, "judge": judge_routing or {}}
    for patch in patches.values():
        _check_route_patch(patch)
    try:
        for kind, patch in patches.items():
            for task, fields in patch.items():
                row = session.get(AIRouteOverride, (kind, task), with_for_update=True)
                current = load_route(task, kind, _override_dict(row) if row is not None else None)
                merged = route_from_dict(fields, current)
                if row is None:
                    row = AIRouteOverride(kind=kind, task=task)
                    session.add(row)
                row.provider = merged.provider
                row.model = merged.model
                row.temperature = merged.temperature
                logger.info(
                    "route override saved kind=%s task=%s provider=%s model=%s", kind, task, merged.provider, merged.model
                )
        session.add(
            AuditEvent(
                event_type="ai_routing_updated",
                source="ui",
                payload={kind: sorted(patch) for kind, patch in patches.items()},
            )
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return get_routing(session)


def workspace_profile(session: Session) -> GenerationProfile:
    """The global default profile; product defaults until an operator stores one."""
    row = session.get(WorkspacePreference, _PREFERENCES_ID)
    if row is None or not row.payload:
        return default_profile()
    try:
        return load_profile(row.payload.get("generation_profile"))
    except ValidationError as exc:
        logger.warning("stored workspace profile is invalid, using defaults: %s", exc)
        return default_profile()


def get_preferences(session: Session) -> dict[str, Any]:
    row = session.get(WorkspacePreference, _PREFERENCES_ID)
    return {
        "generation_profile": workspace_profile(session).snapshot(),
        "updated_at": row.updated_at if row is not None else None,
    }


def update_preferences(session: Session, generation_profile: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``generation_profile`` into the stored default; raises ``ValidationError`` on bad fields."""
    try:
        row = session.get(WorkspacePreference, _PREFERENCES_ID, with_for_update=True)
        merged = load_profile(generation_profile, base=workspace_profile(session))
        if row is None:
            row = WorkspacePreference(id=_PREFERENCES_ID)
            session.add(row)
        row.payload = {"generation_profile": merged.snapshot()}
        session.add(
            AuditEvent(
                event_type="ai_preferences_updated",
                source="ui",
                payload={"fields": sorted(generation_profile)},
            )
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("workspace generation profile updated fields=%s", sorted(generation_profile))
    return get_preferences(session)
