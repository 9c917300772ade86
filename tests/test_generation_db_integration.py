from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import delete, select, text

from db.models import AuditEvent, GeneratedAsset, SrtAsset, TaskGenerationDiagnosticsRow, TranscriptSegmentRow
from db.session import SessionLocal
from generation.service import get_diagnostics, run_task, save_block

_LINES = [
    "Hoje eu quero falar sobre o erro que mais custa margem em empresas de servico.",
    "O desconto sem criterio aparece em quase toda negociacao de fim de trimestre.",
    "A estrategia que funcionou para nossos clientes foi trocar desconto por escopo.",
    "Em tres meses a margem bruta voltou para 32% sem perder contratos importantes.",
    "O passo pratico e simples: defina antes o que voce aceita trocar na mesa.",
    "Depois treine o time para pedir algo em troca de cada concessao feita.",
]


def _require_db() -> None:
    try:
        with SessionLocal() as session:
            session.execute(text("select 1"))
            session.query(SrtAsset).limit(1).all()
            session.query(TaskGenerationDiagnosticsRow).limit(1).all()
    except Exception as exc:  # pragma: no cover - depends on local env
        pytest.skip(f"DB not ready for integration test: {exc}")


def _cleanup(srt_asset_id) -> None:
    with SessionLocal() as session:
        session.execute(delete(AuditEvent).where(AuditEvent.payload["srt_asset_id"].astext == str(srt_asset_id)))
        session.execute(delete(SrtAsset).where(SrtAsset.id == srt_asset_id))
        session.commit()


def test_heuristic_run_persists_versions_and_diagnostics(monkeypatch) -> None:
    _require_db()
    monkeypatch.setenv("LLM_ROUTE_ANALYSIS_PROVIDER", "heuristic")
    monkeypatch.setenv("LLM_ROUTE_LINKEDIN_PROVIDER", "heuristic")
    monkeypatch.setenv("LLM_JUDGE_ROUTE_LINKEDIN_PROVIDER", "heuristic")
    srt_asset_id = uuid4()

    with SessionLocal() as session:
        session.add(SrtAsset(id=srt_asset_id, filename="integration.srt", duration_ms=len(_LINES) * 9000))
        session.add_all(
            TranscriptSegmentRow(
                srt_asset_id=srt_asset_id, idx=index + 1, start_ms=index * 9000, end_ms=(index + 1) * 9000, text=line
            )
            for index, line in enumerate(_LINES)
        )
        session.commit()

    try:
        with SessionLocal() as session:
            analysis = run_task(session, srt_asset_id, "analysis")
            first = run_task(session, srt_asset_id, "linkedin")
            second = run_task(session, srt_asset_id, "linkedin")
            edited = save_block(session, srt_asset_id, "linkedin", "hook", "Sua margem some na mesa de negociacao hoje")

        assert analysis.version == 1
        assert [first.version, second.version, edited.version] == [1, 2, 3]
        assert edited.source == "block_save"

        with SessionLocal() as session:
            versions = session.scalars(
                select(GeneratedAsset.version)
                .where(GeneratedAsset.srt_asset_id == srt_asset_id, GeneratedAsset.type == "linkedin")
                .order_by(GeneratedAsset.version)
            ).all()
            diagnostics = {row["task"]: row for row in get_diagnostics(session, srt_asset_id)}

        assert versions == [1, 2, 3]
        assert set(diagnostics) == {"analysis", "linkedin"}
        assert diagnostics["linkedin"]["used_heuristic_fallback"] is True
        assert diagnostics["linkedin"]["fallback_reason"] == "provider_set_heuristic"
        assert diagnostics["linkedin"]["selected_variant"] == 1
    finally:
        _cleanup(srt_asset_id)
