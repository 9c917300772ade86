"""Deterministic, non-LLM scoring of normalized payloads.

Every function here is pure: the same payload, evidence map, segments and
task profile always produce the same score, subscores and issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import re
from typing import Any, Sequence

from .evidence import EvidenceMap, collect_string_blocks, source_attribution
from .profile import TaskProfile
from .text import (
    avg_length,
    count_ungrounded_numbers,
    has_ellipsis_artifact,
    is_generic_token,
    ms_to_timestamp,
    opening_hook_strength,
    repeated_ratio,
    round_score,
    timestamp_to_ms,
    unique_ratio,
)
from .types import SUBSCORE_KEYS, QualityEvaluation, TranscriptSegment

__all__ = [
    "HeuristicResult",
    "blocking_issues",
    "has_cta_intent",
    "is_blocking_issue",
    "score",
    "source_attribution",
    "validate_payload",
]

_CTA_PATTERNS = {
    "comment": re.compile(
        r"(coment|responda|qual a sua|qual foi|qual dessas|qual destes|qual voce|voce vai|você|me diz|escreva|me conta|"
        r"conta aqui|deixa nos comentarios|deixa nos comentários|nos comentarios|nos comentários)",
        re.IGNORECASE,
    ),
    "share": re.compile(
        r"(compartilh|manda para|envia para|envie para|marque alguem|marque alguém|salva esse|salve esse|"
        r"reposta|repost)",
        re.IGNORECASE,
    ),
    "dm": re.compile(r"(direct|dm|inbox|me chama|mensagem privada|chama no privado)", re.IGNORECASE),
    "lead": re.compile(
        r"(template|material|guia|diagnostic|diagnóstico|link|aplicar|falar com|checklist|planilha|"
        r"comenta .*mapa|comente .*mapa|comenta .*material|comente .*material)",
        re.IGNORECASE,
    ),
}
_ILLUSTRATIVE_CONTEXT = re.compile(
    r"(por exemplo|exemplo|hipotetic|simulac|cenario|suponha|imagine|digamos|estimativa|ilustrativo|caso ficticio)",
    re.IGNORECASE,
)
_HARD_METRIC_CONTEXT = re.compile(
    r"(mrr|arr|cac|ltv|nps|roi|churn|taxa|convers|fatur|receita|margem|ticket|clientes|contratos|dias|meses|"
    r"anos|percentual|%|r\$)",
    re.IGNORECASE,
)
_PROOF_SIGNAL = re.compile(r"(\d|r\$|%|exemplo|caso|dados|metrica|resultado)", re.IGNORECASE)
_FRAMEWORK_SIGNAL = re.compile(
    r"(framework|passo|etapa|checklist|1\)|2\)|3\)|primeiro|segundo|terceiro)", re.IGNORECASE
)
_MECHANISM_SIGNAL = re.compile(r"(porque|causa|mecanismo|alavanca|efeito|consequencia|logo)", re.IGNORECASE)
_SPECIFIC_ASK = re.compile(
    r"(qual|quanto|quando|em quantos|que metrica|que resultado|metrica|métrica|meta\b|palavra|etapa|passo)", re.IGNORECASE
)
_TIME_BOUND = re.compile(
    r"(hoje|amanh[aã]|\bat[eé] (segunda|terca|terça|quarta|quinta|sexta|sabado|sábado|domingo|amanh|o fim|a pr[oó]xima)|"
    r"\b\d+\s*(dias|semanas|horas)\b|(esta|essa|nesta|nessa|proxima|próxima|da) semana|(este|esse|neste) m[eê]s|"
    r"(proximo|próximo) ciclo|ciclo atual|prazo)",
    re.IGNORECASE,
)
_THREAD_PREFIX = re.compile(r"^\s*\d+\s*/\s*\d*\s*")
_CORTE_PREFIX = re.compile(r"^\s*corte\s+\d+\s*[:.)-]?\s*", re.IGNORECASE)

# task -> (soft, hard, payload overflow cap)
_NUMERIC_LIMITS = {
    "analysis": (2, 5, 6),
    "reels": (2, 4, 5),
    "newsletter": (3, 5, 7),
    "linkedin": (2, 4, 5),
    "x": (3, 6, 7),
}

_BLOCKING_CODES = frozenset(
    {
        "invalid_timestamp_window",
        "duration_too_short",
        "duration_too_long",
        "truncation_artifact",
        "exceeds_280",
        "missing_application",
        "too_short_for_linkedin",
        "numeric_claim_outside_source_excessive",
        "numeric_claim_outside_source_hard",
    }
)
_BLOCKING_TOO_SHORT_PATHS = frozenset({"headline", "subheadline", "hook", "thread"})

# issue code -> (subscore, deduction)
_ISSUE_PENALTIES = {
    "numeric_claim_outside_source_excessive": ("depth", 1.2),
    "numeric_claim_outside_source_hard": ("depth", 0.9),
    "numeric_claim_outside_source": ("depth", 0.35),
    "numeric_claim_example_context": ("depth", 0.15),
    "truncation_artifact": ("clarity", 1.1),
    "missing_proof_layer": ("depth", 0.5),
    "missing_framework_layer": ("depth", 0.3),
    "missing_cta_intent": ("applicability", 0.4),
    "missing_intent": ("applicability", 0.35),
    "weak_intent": ("applicability", 0.35),
    "low_specificity": ("applicability", 0.25),
    "missing_time_bound": ("applicability", 0.35),
    "must_end_with_question": ("clarity", 0.3),
    "weak_opening_hook": ("retention_potential", 0.4),
    "repeated_insights": ("originality", 0.5),
    "weak_causal_mechanism": ("depth", 0.4),
}
_DEFAULT_BLOCKING_PENALTY = ("clarity", 0.5)
_DEFAULT_SOFT_PENALTY = ("applicability", 0.2)


def _split_issue(issue: str) -> tuple[str, str]:
    path, _, code = issue.rpartition(": ")
    return path, code


def is_blocking_issue(issue: str) -> bool:
    path, code = _split_issue(issue)
    if code in _BLOCKING_CODES:
        return True
    if code == "too_short" and path in _BLOCKING_TOO_SHORT_PATHS:
        return True
    return code == "missing_cta" and path == "sections"


def blocking_issues(issues: Sequence[str]) -> list[str]:
    return [issue for issue in issues if is_blocking_issue(issue)]


def has_cta_intent(text: str, mode: str) -> bool:
    if mode == "none":
        return True
    pattern = _CTA_PATTERNS.get(mode)
    return bool(pattern and pattern.search(text or ""))


def _by_length(length: str, short: int, standard: int, long: int) -> int:
    if length == "short":
        return short
    if length == "long":
        return long
    return standard


def _cta_ask_issues(path: str, text: str) -> list[str]:
    """A call-to-action should name a concrete ask and a window to act in."""
    issues: list[str] = []
    if not _SPECIFIC_ASK.search(text):
        issues.append(f"{path}: low_specificity")
    if not _TIME_BOUND.search(text):
        issues.append(f"{path}: missing_time_bound")
    return issues


def _numeric_guard_text(task: str, path: str, text: str) -> str:
    if task == "x" and path.startswith("thread["):
        return _THREAD_PREFIX.sub("", text)
    if task == "reels" and path.endswith(".title"):
        return _CORTE_PREFIX.sub("", text)
    return text


def _window_text(segments: Sequence[TranscriptSegment], start: str, end: str) -> str:
    start_ms = timestamp_to_ms(start)
    end_ms = timestamp_to_ms(end)
    if start_ms is None or end_ms is None or end_ms <= start_ms:
        return ""
    return " ".join(
        segment.text for segment in segments if segment.start_ms >= start_ms and segment.end_ms <= end_ms
    ).strip()


def _numeric_issues(task: str, payload: dict[str, Any], evidence: EvidenceMap) -> list[str]:
    soft_limit, hard_limit, overflow_cap = _NUMERIC_LIMITS[task]
    issues: list[str] = []
    soft_overflows = 0
    for path, raw in collect_string_blocks(task, payload):
        text = raw.strip()
        if not text:
            continue
        if has_ellipsis_artifact(text):
            issues.append(f"{path}: truncation_artifact")
            continue
        guarded = _numeric_guard_text(task, path, text)
        ungrounded = count_ungrounded_numbers(guarded, evidence.numbers)
        illustrative = bool(_ILLUSTRATIVE_CONTEXT.search(guarded))
        hard_metric = bool(_HARD_METRIC_CONTEXT.search(guarded))
        soft = soft_limit + (1 if illustrative else 0)
        hard = hard_limit + (2 if illustrative and not hard_metric else 0)
        if ungrounded > hard:
            issues.append(f"{path}: numeric_claim_outside_source_hard")
            continue
        if ungrounded > soft:
            soft_overflows += 1
            code = "numeric_claim_example_context" if illustrative and not hard_metric else "numeric_claim_outside_source"
            issues.append(f"{path}: {code}")
    if soft_overflows >= overflow_cap:
        issues.append("payload: numeric_claim_outside_source_excessive")
    return issues


def _reels_issues(payload: dict[str, Any], segments: Sequence[TranscriptSegment], profile: TaskProfile) -> list[str]:
    issues: list[str] = []
    starts = {ms_to_timestamp(segment.start_ms) for segment in segments}
    ends = {ms_to_timestamp(segment.end_ms) for segment in segments}
    total_s = max(1, round(segments[-1].end_ms / 1000)) if segments else 0
    min_duration_s = 14 if total_s >= 90 else 10 if total_s >= 45 else 6
    min_caption = _by_length(profile.length, 140, 190, 260)
    min_hashtags = 5 if profile.target_outcome in ("followers", "shares") else 4
    for idx, clip in enumerate(payload.get("clips") or []):
        start, end = clip.get("start", ""), clip.get("end", "")
        duration_ms = (timestamp_to_ms(end) or 0) - (timestamp_to_ms(start) or 0)
        duration_s = round(duration_ms / 1000)
        if start not in starts or end not in ends or duration_ms <= 0:
            issues.append(f"clips[{idx}]: invalid_timestamp_window")
        if duration_s < min_duration_s:
            issues.append(f"clips[{idx}]: duration_too_short")
        if duration_s > 65:
            issues.append(f"clips[{idx}]: duration_too_long")
        if len(clip.get("title", "").strip()) < 16:
            issues.append(f"clips[{idx}]: title_too_short")
        if len(clip.get("caption", "").strip()) < min_caption:
            issues.append(f"clips[{idx}]: caption_too_short")
        if len(clip.get("whyItWorks", "").strip()) < 90:
            issues.append(f"clips[{idx}]: rationale_too_shallow")
        if len(clip.get("hashtags") or []) < min_hashtags:
            issues.append(f"clips[{idx}]: hashtag_count_low")
        if not has_cta_intent(clip.get("caption", ""), profile.cta_mode):
            issues.append(f"clips[{idx}]: missing_cta_intent")
        elif profile.cta_mode != "none":
            issues += _cta_ask_issues(f"clips[{idx}]", clip.get("caption", ""))
        window = _window_text(segments, start, end)
        if window and opening_hook_strength(window) < 2.5:
            issues.append(f"clips[{idx}]: weak_opening_hook")
    return issues


def _newsletter_issues(payload: dict[str, Any], profile: TaskProfile) -> list[str]:
    issues: list[str] = []
    sections = payload.get("sections") or []
    insights = [section for section in sections if section.get("type") == "insight"]
    application = next((section for section in sections if section.get("type") == "application"), None)
    cta = next((section for section in sections if section.get("type") == "cta"), None)
    if application is None:
        issues.append("sections: missing_application")
    if cta is None:
        issues.append("sections: missing_cta")
    if len(payload.get("headline", "").strip()) < 24:
        issues.append("headline: too_short")
    if len(payload.get("subheadline", "").strip()) < 48:
        issues.append("subheadline: too_short")
    if len(insights) < _by_length(profile.length, 2, 3, 4):
        issues.append("sections: insight_count_low")
    bullets = (application or {}).get("bullets") or []
    if application is not None and len(bullets) < _by_length(profile.length, 3, 4, 5):
        issues.append("sections: application_bullets_low")
    insight_texts = [section.get("text", "") for section in insights]
    if repeated_ratio(insight_texts) >= 0.2:
        issues.append("sections: repeated_insights")
    mechanisms = sum(1 for text in insight_texts if _MECHANISM_SIGNAL.search(text))
    if mechanisms < min(2, len(insight_texts)):
        issues.append("sections: weak_causal_mechanism")
    if any(len(bullet.strip()) < 28 for bullet in bullets):
        issues.append("sections: checklist_bullets_too_generic")
    if profile.cta_mode != "none" and (cta is None or not has_cta_intent(cta.get("text", ""), profile.cta_mode)):
        issues.append("cta: missing_intent")
    elif profile.cta_mode != "none":
        issues += _cta_ask_issues("cta", cta.get("text", ""))
    return issues


def _linkedin_issues(payload: dict[str, Any], profile: TaskProfile) -> list[str]:
    issues: list[str] = []
    body = payload.get("body") or []
    question = payload.get("ctaQuestion", "").strip()
    if len(body) < _by_length(profile.length, 4, 5, 7):
        issues.append("body: too_short_for_linkedin")
    if len(payload.get("hook", "").strip()) < 35:
        issues.append("hook: too_short")
    if not question.endswith("?"):
        issues.append("ctaQuestion: must_end_with_question")
    if not has_cta_intent(question, "comment" if profile.cta_mode == "none" else profile.cta_mode):
        issues.append("ctaQuestion: weak_intent")
    if not any(_PROOF_SIGNAL.search(paragraph) for paragraph in body):
        issues.append("body: missing_proof_layer")
    if not any(_FRAMEWORK_SIGNAL.search(paragraph) for paragraph in body):
        issues.append("body: missing_framework_layer")
    issues += _cta_ask_issues("ctaQuestion", question)
    return issues


def _x_issues(payload: dict[str, Any], profile: TaskProfile) -> list[str]:
    issues: list[str] = []
    standalone = payload.get("standalone") or []
    thread = payload.get("thread") or []
    if len(thread) < _by_length(profile.length, 3, 4, 5):
        issues.append("thread: too_short")
    if len(standalone) < _by_length(profile.length, 2, 3, 4):
        issues.append("standalone: too_few")
    min_chars = _by_length(profile.length, 45, 65, 85)
    posts = [*standalone, *thread]
    for idx, post in enumerate(posts):
        if len(post) > 280:
            issues.append(f"x_post[{idx}]: exceeds_280")
        if len(post) < min_chars:
            issues.append(f"x_post[{idx}]: too_short")
    calls = [post for post in posts if has_cta_intent(post, profile.cta_mode)]
    if not calls:
        issues.append("x: missing_cta_intent")
    elif profile.cta_mode != "none":
        if not any(_SPECIFIC_ASK.search(post) for post in calls):
            issues.append("x: low_specificity")
        if not any(_TIME_BOUND.search(post) for post in calls):
            issues.append("x: missing_time_bound")
    return issues


def _analysis_issues(payload: dict[str, Any], segments: Sequence[TranscriptSegment], profile: TaskProfile) -> list[str]:
    issues: list[str] = []
    count = len(segments)
    if len(payload.get("topics") or []) < max(2, min(4, math.ceil(count / 18))):
        issues.append("topics: too_few")
    if len(payload.get("retentionMoments") or []) < max(1, min(3, math.ceil(count / 24))):
        issues.append("retentionMoments: too_few")
    if len(payload.get("recommendations") or []) < _by_length(profile.length, 3, 4, 5):
        issues.append("recommendations: too_few")
    if len(payload.get("weakSpots") or []) < _by_length(profile.length, 1, 2, 3):
        issues.append("weakSpots: too_few")
    if len(payload.get("editorialAngles") or []) < _by_length(profile.length, 2, 3, 4):
        issues.append("editorialAngles: too_few")
    return issues


def validate_payload(
    task: str,
    payload: dict[str, Any],
    evidence: EvidenceMap,
    segments: Sequence[TranscriptSegment] = (),
    task_profile: TaskProfile | None = None,
) -> list[str]:
    """Return the unique validation issues of a payload as ``"path: code"`` strings."""
    profile = task_profile or TaskProfile()
    issues = _numeric_issues(task, payload, evidence)
    if task == "reels":
        issues += _reels_issues(payload, segments, profile)
    elif task == "newsletter":
        issues += _newsletter_issues(payload, profile)
    elif task == "linkedin":
        issues += _linkedin_issues(payload, profile)
    elif task == "x":
        issues += _x_issues(payload, profile)
    elif task == "analysis":
        issues += _analysis_issues(payload, segments, profile)
    return list(dict.fromkeys(issues))


def _analysis_subscores(payload: dict[str, Any]) -> dict[str, float]:
    thesis = payload.get("thesis", "")
    topics = payload.get("topics") or []
    recommendations = payload.get("recommendations") or []
    structure = payload.get("structure") or {}
    generic_topics = sum(1 for topic in topics if is_generic_token(topic))
    rec_avg = avg_length(recommendations)
    structure_filled = sum(
        1 for key in ("problem", "tension", "insight", "application") if len(structure.get(key, "").strip()) >= 10
    )
    retention = len(payload.get("retentionMoments") or [])
    angles = len(payload.get("editorialAngles") or [])
    weak_spots = len(payload.get("weakSpots") or [])
    declared = payload.get("qualityScores") or {}
    polarity = payload.get("polarityScore", 0)
    return {
        "clarity": 5.2
        + (1.8 if len(thesis) >= 70 else 1.1 if len(thesis) >= 45 else 0.4)
        + (1.2 if len(topics) >= 4 else 0.5)
        + (0.8 if structure_filled >= 3 else 0.2)
        - generic_topics * 0.25,
        "depth": 4.8
        + (1.7 if len(recommendations) >= 4 else 0.9)
        + (1.4 if rec_avg >= 80 else 0.8 if rec_avg >= 55 else 0.2)
        + (0.8 if retention >= 4 else 0.2)
        + (0.8 if angles >= 3 else 0.2),
        "originality": 4.9
        + (1.3 if unique_ratio(topics) >= 0.85 else 0.7)
        + (0.8 if payload.get("contentType") in ("provocative", "framework") else 0.3)
        - generic_topics * 0.3,
        "applicability": 5.0
        + (1.5 if len(recommendations) >= 4 else 0.8)
        + (1.0 if rec_avg >= 65 else 0.4)
        + (0.7 if structure_filled >= 4 else 0.2)
        + (0.4 if weak_spots >= 2 else 0.0),
        "retention_potential": 4.8
        + (1.4 if 4 <= polarity <= 8 else 0.8)
        + (0.8 if len(thesis) >= 55 else 0.3)
        + (0.9 if retention >= 4 else 0.3)
        + (0.5 if declared.get("insightDensity", 0) >= 8 else 0.0),
    }


def _reels_subscores(payload: dict[str, Any]) -> dict[str, float]:
    clips = payload.get("clips") or []
    count = max(1, len(clips))
    caption_avg = avg_length([clip.get("caption", "") for clip in clips])
    why_avg = avg_length([clip.get("whyItWorks", "") for clip in clips])
    hashtags_avg = sum(len(clip.get("hashtags") or []) for clip in clips) / count
    corte_titles = sum(1 for clip in clips if re.match(r"^corte\s+\d+", clip.get("title", ""), re.IGNORECASE))
    line_breaks = sum(1 for clip in clips if "\n" in clip.get("caption", "")) / count
    has_action = any(
        re.search(r"(comente|compartilhe|direct|responda)", clip.get("caption", ""), re.IGNORECASE) for clip in clips
    )
    return {
        "clarity": 4.9 + (1.7 if caption_avg >= 220 else 1.1 if caption_avg >= 170 else 0.4) + (1.2 if why_avg >= 90 else 0.6),
        "depth": 4.6 + (1.8 if why_avg >= 110 else 1.1 if why_avg >= 75 else 0.4) + (1.2 if caption_avg >= 210 else 0.5),
        "originality": 4.8
        + (1.2 if unique_ratio([clip.get("title", "") for clip in clips]) >= 0.8 else 0.6)
        + (0.7 if corte_titles == 0 else 0.0)
        + (0.7 if hashtags_avg >= 4 else 0.2),
        "applicability": 4.8 + (1.4 if has_action else 0.6) + (0.8 if hashtags_avg >= 4 else 0.3),
        "retention_potential": 5.0
        + (1.0 if len(clips) >= 2 else 0.4)
        + (1.0 if line_breaks >= 0.8 else 0.3)
        + (0.8 if corte_titles == 0 else 0.1),
    }


def _newsletter_subscores(payload: dict[str, Any]) -> dict[str, float]:
    sections = payload.get("sections") or []
    headline = payload.get("headline", "")
    subheadline = payload.get("subheadline", "")
    insights = [section.get("text", "") for section in sections if section.get("type") == "insight"]
    intro = next((section for section in sections if section.get("type") == "intro"), None)
    application = next((section for section in sections if section.get("type") == "application"), None)
    cta = next((section for section in sections if section.get("type") == "cta"), None)
    bullets = len((application or {}).get("bullets") or [])
    insights_avg = avg_length(insights)
    return {
        "clarity": 5.0
        + (1.2 if len(headline) >= 45 else 0.6)
        + (1.1 if len(subheadline) >= 70 else 0.4)
        + (0.9 if intro and len(intro.get("text", "")) >= 130 else 0.3),
        "depth": 4.9
        + (1.4 if len(insights) >= 2 else 0.7)
        + (1.4 if insights_avg >= 170 else 0.8 if insights_avg >= 120 else 0.3),
        "originality": 4.8 + (1.2 if unique_ratio(insights) >= 0.8 else 0.6) + (0.8 if len(headline) >= 40 else 0.3),
        "applicability": 5.0
        + (1.6 if bullets >= 4 else 1.0 if bullets >= 3 else 0.4)
        + (0.8 if cta and len(cta.get("text", "")) >= 40 else 0.3),
        "retention_potential": 4.7
        + (1.1 if len(headline) >= 40 else 0.5)
        + (1.0 if len(insights) >= 2 else 0.4)
        + (0.7 if cta else 0.2),
    }


def _linkedin_subscores(payload: dict[str, Any]) -> dict[str, float]:
    body = payload.get("body") or []
    hook = payload.get("hook", "")
    body_avg = avg_length(body)
    practical = sum(
        1
        for paragraph in body
        if re.search(r"(exemplo|passo|aplique|na pratica|resultado|erro|framework|metodo)", paragraph, re.IGNORECASE)
    )
    return {
        "clarity": 5.0 + (1.3 if len(hook) >= 45 else 0.6) + (1.2 if body_avg >= 95 else 0.8 if body_avg >= 70 else 0.3),
        "depth": 4.7 + (1.3 if len(body) >= 5 else 0.7) + (1.4 if practical >= 2 else 0.7),
        "originality": 4.8 + (1.3 if unique_ratio(body) >= 0.82 else 0.7) + (0.7 if len(hook) >= 35 else 0.2),
        "applicability": 4.9
        + (1.6 if practical >= 2 else 0.8)
        + (0.8 if payload.get("ctaQuestion", "").strip().endswith("?") else 0.3),
        "retention_potential": 4.9 + (1.2 if len(hook) >= 45 else 0.5) + (1.0 if len(body) >= 5 else 0.4),
    }


def _x_subscores(payload: dict[str, Any]) -> dict[str, float]:
    standalone = payload.get("standalone") or []
    thread = payload.get("thread") or []
    posts = [*standalone, *thread]
    standalone_avg = avg_length(standalone)
    thread_avg = avg_length(thread)
    style = (payload.get("notes") or {}).get("style", "")
    return {
        "clarity": 4.9 + (1.2 if standalone_avg >= 80 else 0.6) + (1.2 if thread_avg >= 85 else 0.6),
        "depth": 4.7 + (1.3 if len(thread) >= 5 else 0.7) + (1.2 if thread_avg >= 90 else 0.6),
        "originality": 4.8 + (1.5 if unique_ratio(posts) >= 0.82 else 0.7) + (0.7 if len(style) >= 12 else 0.2),
        "applicability": 4.8
        + (1.4 if any(re.search(r"(passo|aplique|faca|execute|teste)", post, re.IGNORECASE) for post in posts) else 0.7)
        + (0.8 if any(re.match(r"^\d+/", post.strip()) for post in thread) else 0.3),
        "retention_potential": 5.0 + (1.0 if len(standalone) >= 4 else 0.4) + (1.1 if len(thread) >= 5 else 0.5),
    }


_SUBSCORERS = {
    "analysis": _analysis_subscores,
    "reels": _reels_subscores,
    "newsletter": _newsletter_subscores,
    "linkedin": _linkedin_subscores,
    "x": _x_subscores,
}


@dataclass
class HeuristicResult:
    score: float
    subscores: dict[str, float]
    issues: list[str] = field(default_factory=list)

    @property
    def blocking(self) -> list[str]:
        return blocking_issues(self.issues)

    def evaluation(self) -> QualityEvaluation:
        return QualityEvaluation(
            score=self.score,
            subscores=dict(self.subscores),
            summary="Heuristic rubric",
            weaknesses=list(self.issues[:6]),
        )


def _apply_penalties(subscores: dict[str, float], issues: Sequence[str]) -> dict[str, float]:
    penalized = dict(subscores)
    for issue in issues:
        _, code = _split_issue(issue)
        key, amount = _ISSUE_PENALTIES.get(
            code, _DEFAULT_BLOCKING_PENALTY if is_blocking_issue(issue) else _DEFAULT_SOFT_PENALTY
        )
        penalized[key] -= amount
    return penalized


def score(
    task: str,
    payload: dict[str, Any],
    evidence: EvidenceMap,
    task_profile: TaskProfile | None = None,
    segments: Sequence[TranscriptSegment] = (),
) -> HeuristicResult:
    issues = validate_payload(task, payload, evidence, segments, task_profile)
    raw = _apply_penalties(_SUBSCORERS[task](payload), issues)
    subscores = {key: round_score(raw[key]) for key in SUBSCORE_KEYS}
    overall = round_score(sum(subscores.values()) / len(SUBSCORE_KEYS))
    return HeuristicResult(score=overall, subscores=subscores, issues=issues)
