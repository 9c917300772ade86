from __future__ import annotations

import json
import re
from typing import Any, Sequence

from generation.evidence import EvidenceMap, evidence_prompt_block, pick_coverage_segments
from generation.profile import GenerationProfile, quality_plan
from generation.text import ms_to_timestamp, segment_score
from generation.types import TranscriptSegment

_VARIABLE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

_EXCERPT_SEGMENTS = {"reels": 180, "newsletter": 120, "linkedin": 110, "x": 110}

_HARD_RULES = {
    "analysis": [
        "BLOCO CRITICO ANALISE:",
        "1) Tese precisa trazer mecanismo causal, nao resumo superficial.",
        "2) Topicos devem ser especificos, sem tokens vagos e sem repeticao.",
        "3) Retention moments precisam citar trechos defensaveis pela transcricao.",
        "4) Recomendacoes devem ser implementaveis em conteudo real.",
        "5) qualityScores acima de 8 so quando houver evidencias claras no texto.",
        "6) JSON alvo deve incluir thesis, topics, contentType, polarityScore, recommendations, structure, "
        "retentionMoments, editorialAngles, weakSpots e qualityScores.",
    ],
    "reels": [
        "BLOCO CRITICO REELS:",
        "1) Evite abertura protocolar e trechos sem friccao.",
        "2) Priorize cortes com conflito, alerta, regra ou prova pratica.",
        "3) Nao use titulo generico nem CTA vazio.",
    ],
    "x": [
        "BLOCO CRITICO X:",
        "1) Nao abrevie texto com reticencias.",
        "2) Nao entregue frases truncadas.",
        "3) Cada post precisa fechar uma unidade de pensamento.",
    ],
}

_OUTPUT_CONTRACTS = {
    "analysis": (
        "CONTRATO_JSON_ANALYSIS:\n"
        '{ "thesis": "...", "topics": ["..."], "contentType": "educational|provocative|story|framework", '
        '"polarityScore": 0, "recommendations": ["..."], '
        '"structure": { "problem": "...", "tension": "...", "insight": "...", "application": "..." }, '
        '"retentionMoments": [ { "text": "...", "type": "...", "whyItGrabs": "..." } ], '
        '"editorialAngles": [ { "angle": "...", "idealChannel": "...", "format": "...", "whyStronger": "..." } ], '
        '"weakSpots": [ { "issue": "...", "why": "..." } ], '
        '"qualityScores": { "insightDensity": 0, "standaloneClarity": 0, "polarity": 0, "practicalValue": 0 } }'
    ),
    "reels": (
        "CONTRATO_JSON_REELS:\n"
        '{ "clips": [ { "startIdx": 1, "endIdx": 2, "title": "...", "caption": "...", "hashtags": ["#..."], '
        '"whyItWorks": "...", "scores": { "hook": 0, "clarity": 0, "retention": 0, "share": 0 } } ] }'
    ),
    "newsletter": (
        "CONTRATO_JSON_NEWSLETTER:\n"
        '{ "headline": "...", "subheadline": "...", "sections": [ { "type": "intro", "text": "..." }, '
        '{ "type": "insight", "title": "...", "text": "..." }, { "type": "application", "bullets": ["..."] }, '
        '{ "type": "cta", "text": "..." } ] }'
    ),
    "linkedin": 'CONTRATO_JSON_LINKEDIN:\n{ "hook": "...", "body": ["..."], "ctaQuestion": "..." }',
    "x": 'CONTRATO_JSON_X:\n{ "standalone": ["..."], "thread": ["..."], "notes": { "style": "..." } }',
}

_VARIATION_FOCUS = {
    "analysis": "Diferencie tese e recomendacoes sem perder fidelidade ao texto.",
    "reels": "Diferencie angulos, evite repeticao semantica e maximize potencial de seguir perfil.",
    "newsletter": "Traga estrutura diferente, com profundidade pratica e aplicacao mais forte.",
    "linkedin": "Priorize gancho alternativo e progressao argumentativa distinta.",
    "x": "Traga novos hooks e thread com progressao diferente.",
}


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{{ name }}`` placeholders; unknown names render as empty text."""

    def _sub(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _VARIABLE.sub(_sub, template)


def format_segments(segments: Sequence[TranscriptSegment], max_chars: int | None = None) -> str:
    lines: list[str] = []
    budget = max_chars
    for segment in segments:
        line = (
            f"[{segment.idx}] {ms_to_timestamp(segment.start_ms)}-"
            f"{ms_to_timestamp(segment.end_ms)}: {segment.text}"
        )
        if budget is not None:
            if len(line) + 1 > budget:
                break
            budget -= len(line) + 1
        lines.append(line)
    return "\n".join(lines)


def transcript_excerpt(segments: Sequence[TranscriptSegment], task: str, profile: GenerationProfile) -> str:
    if task != "analysis":
        return format_segments(segments[: _EXCERPT_SEGMENTS.get(task, 110)])
    if not segments:
        return ""
    is_max = profile.quality.mode == "max"
    max_segments = 160 if is_max else 120
    coverage_target = 70 if is_max else 45
    max_chars = 42_000 if is_max else 28_000
    selected = {
        segment.idx: segment
        for segment in pick_coverage_segments(segments, min(coverage_target, len(segments)))
    }
    ranked = sorted(segments, key=lambda item: segment_score(item.text, item.tokens_est), reverse=True)
    for segment in ranked:
        if len(selected) >= min(max_segments, len(segments)):
            break
        selected.setdefault(segment.idx, segment)
    ordered = sorted(selected.values(), key=lambda item: item.start_ms)
    return "\n".join(
        [
            f"META total_segments={len(segments)} selecionados={len(ordered)} "
            f"modo_qualidade={profile.quality.mode}",
            "CRITERIO cobertura_total + trechos_de_alto_potencial",
            format_segments(ordered, max_chars),
        ]
    )


def build_prompt_variables(
    profile: GenerationProfile,
    task: str,
    transcript_excerpt: str = "",
    analysis: dict[str, Any] | None = None,
    *,
    duration_sec: int | None = None,
    clips_context: str = "",
) -> dict[str, str]:
    task_cfg = profile.tasks[task]
    memory = profile.performance_memory[task]
    return {
        "audience": profile.audience,
        "goal": profile.goal,
        "tone": profile.tone,
        "language": profile.language,
        "strategy": task_cfg.strategy,
        "focus": task_cfg.focus,
        "target_outcome": task_cfg.target_outcome,
        "audience_level": task_cfg.audience_level,
        "length": task_cfg.length,
        "cta_mode": task_cfg.cta_mode,
        "quality_mode": profile.quality.mode,
        "quality_variations": str(profile.quality.variation_count),
        "quality_refine_passes": str(profile.quality.refine_passes),
        "voice_identity": profile.voice.identity,
        "voice_rules": profile.voice.writing_rules,
        "voice_banned_terms": profile.voice.banned_terms,
        "voice_signature_phrases": profile.voice.signature_phrases,
        "performance_wins": memory.wins,
        "performance_avoid": memory.avoid,
        "performance_kpi": memory.kpi,
        "transcript_excerpt": transcript_excerpt,
        "analysis_json": json.dumps(analysis, ensure_ascii=False) if analysis else "",
        "duration_sec": str(duration_sec) if duration_sec is not None else "",
        "clips_context": clips_context,
    }


def control_appendix(profile: GenerationProfile, task: str) -> str:
    task_cfg = profile.tasks[task]
    memory = profile.performance_memory[task]
    plan = quality_plan(profile)
    return "\n".join(
        [
            "BLOCO DE CONTROLE EDITORIAL:",
            f"- modo_qualidade: {plan.mode}",
            f"- variacoes_objetivo: {plan.variation_count}",
            f"- refine_passes_objetivo: {plan.refine_passes}",
            f"- foco_tarefa: {task_cfg.focus}",
            f"- outcome_tarefa: {task_cfg.target_outcome}",
            f"- nivel_publico: {task_cfg.audience_level}",
            f"- voice_identity: {profile.voice.identity}",
            f"- voice_rules: {profile.voice.writing_rules}",
            f"- voice_banned_terms: {profile.voice.banned_terms or 'nenhum'}",
            f"- voice_signature_phrases: {profile.voice.signature_phrases or 'nenhuma'}",
            f"- performance_wins: {memory.wins or 'sem historico'}",
            f"- performance_avoid: {memory.avoid or 'sem historico'}",
            f"- performance_kpi: {memory.kpi or 'nao definido'}",
            "Regra: nunca usar travessao.",
            "Regra: nunca entregar texto truncado com reticencias.",
        ]
    )


def output_contract(task: str) -> str:
    return _OUTPUT_CONTRACTS[task]


def with_prompt_controls(
    user_prompt: str,
    profile: GenerationProfile,
    task: str,
    evidence: EvidenceMap | None = None,
) -> str:
    tail = [control_appendix(profile, task)]
    if evidence is not None:
        tail.append(evidence_prompt_block(evidence))
    if task in _HARD_RULES:
        tail.append("\n".join(_HARD_RULES[task]))
    tail.append(output_contract(task))
    tail.append("INSTRUCAO FINAL: entregue SOMENTE JSON valido no contrato.")
    return f"{user_prompt}\n\n" + "\n".join(tail)


def variation_directive(task: str, index: int, total: int) -> str:
    """Directive appended to attempt ``index`` (0-based) of ``total``."""
    prefix = f"Variacao {index + 1}/{total}."
    if index == 0:
        return f"{prefix} Entregue a melhor versao possivel."
    return f"{prefix} {_VARIATION_FOCUS[task]}"


def quality_context(
    task: str,
    variables: dict[str, str],
    evidence: EvidenceMap,
    analysis: dict[str, Any] | None = None,
) -> str:
    """Context block shared by the judge and the refinement prompts."""
    parts = []
    if analysis:
        parts.append(f"analysis_json:\n{json.dumps(analysis, ensure_ascii=False, indent=2)}")
    if variables.get("clips_context"):
        parts.append(f"clips_context:\n{variables['clips_context']}")
    parts.append(f"evidence_map:\n{evidence_prompt_block(evidence, 24)}")
    excerpt = variables.get("transcript_excerpt", "")
    if excerpt:
        parts.append(f"transcript_excerpt:\n{excerpt[:12_000]}")
    profile_vars = {
        key: value
        for key, value in variables.items()
        if key not in ("transcript_excerpt", "analysis_json", "clips_context")
    }
    parts.append(f"profile:\n{json.dumps(profile_vars, ensure_ascii=False, indent=2)}")
    return "\n\n".join(parts)
