"""Composite, publishability and inflation-guard arithmetic shared by selection and refinement."""

from __future__ import annotations

from dataclasses import dataclass
import os
import re
from typing import Any

from .evidence import collect_string_blocks
from .heuristic import has_cta_intent
from .text import has_ellipsis_artifact, repeated_ratio, round_score
from .types import QualityEvaluation

DEFAULT_INFLATION_MAX_DELTA = 2.5
DEFAULT_INFLATION_NEAR_MAX = 9.5

_SHARE_INTENT = re.compile(r"(compartilhe|envie|marque|repost|salve)", re.IGNORECASE)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def inflation_max_delta() -> float:
    return _env_float("INFLATION_GUARD_MAX_DELTA", DEFAULT_INFLATION_MAX_DELTA)


def inflation_near_max() -> float:
    return _env_float("INFLATION_GUARD_NEAR_MAX", DEFAULT_INFLATION_NEAR_MAX)


def composite_score(
    heuristic: QualityEvaluation,
    judge: QualityEvaluation | None,
    weights: tuple[float, float],
) -> float:
    """``judge*wj + heuristic*wh`` minus a penalty for weak judge subscores; heuristic alone without judge."""
    if judge is None:
        return round_score(heuristic.score)
    judge_weight, heuristic_weight = weights
    penalty = max(0.0, 3.0 - judge.min_subscore()) * 0.06
    return round_score(judge.score * judge_weight + heuristic.score * heuristic_weight - penalty)


def publishability_score(
    task: str,
    payload: dict[str, Any],
    heuristic: QualityEvaluation,
    judge: QualityEvaluation,
) -> float:
    """Projected readiness to publish; ``judge`` is the real or fallback evaluation."""
    value = (
        judge.score * 0.34
        + judge.subscores["applicability"] * 0.24
        + judge.subscores["clarity"] * 0.15
        + judge.subscores["retention_potential"] * 0.11
        + heuristic.subscores["applicability"] * 0.10
        + heuristic.subscores["clarity"] * 0.06
    )
    texts = [text for _, text in collect_string_blocks(task, payload)]
    if any(has_ellipsis_artifact(text) for text in texts):
        value -= 1.1
    repetition = repeated_ratio(texts)
    if repetition >= 0.22:
        value -= 0.55
    elif repetition >= 0.14:
        value -= 0.25

    if task == "reels":
        captions = [clip.get("caption") or "" for clip in payload.get("clips") or []]
        if not captions or not all(has_cta_intent(caption, "comment") for caption in captions):
            value -= 0.35
    elif task == "newsletter":
        cta = " ".join(
            section.get("text") or "" for section in payload.get("sections") or [] if section.get("type") == "cta"
        )
        if not has_cta_intent(cta, "lead"):
            value -= 0.35
    elif task == "linkedin":
        if not has_cta_intent(payload.get("ctaQuestion") or "", "comment"):
            value -= 0.3
    elif task == "x":
        posts = [*(payload.get("standalone") or []), *(payload.get("thread") or [])]
        if not any(_SHARE_INTENT.search(post) or has_cta_intent(post, "share") for post in posts):
            value -= 0.3
    return round_score(value)


@dataclass(frozen=True)
class GuardOutcome:
    score: float
    applied: bool = False
    reason: str | None = None


def static_guard(display: float, heuristic: QualityEvaluation, judge: QualityEvaluation | None) -> GuardOutcome:
    """Caps a final score that the heuristic alone cannot justify."""
    if judge is None:
        if display > 9.95:
            return GuardOutcome(9.45, True, "hard_cap_without_judge_confirmation")
        return GuardOutcome(display)
    score = display
    reason = None
    if heuristic.score >= 9.7 and judge.score <= 8.6:
        score = min(score, round_score(judge.score + 0.45))
        reason = "high_heuristic_without_judge_support"
    elif heuristic.min_subscore() >= 9.2 and judge.min_subscore() < 8.6:
        score = min(score, round_score(judge.score + 0.35))
        reason = "subscore_mismatch_guard"
    if score > 9.95 and not (judge.score >= 9.7 and judge.min_subscore() >= 9.1):
        score = 9.45
        reason = "hard_cap_without_judge_confirmation"
    return GuardOutcome(round_score(score), reason is not None, reason)


def inflation_check(
    before_heuristic: float,
    after_heuristic: float,
    before_judge: float | None,
    after_judge: float | None,
    threshold: float,
) -> str | None:
    """Reason string when a refinement pass moved a scorer implausibly far, else None."""
    max_delta = inflation_max_delta()
    near_max = inflation_near_max()
    pairs = [("heuristic", before_heuristic, after_heuristic)]
    if before_judge is not None and after_judge is not None:
        pairs.append(("judge", before_judge, after_judge))
    for name, before, after in pairs:
        delta = after - before
        if delta > max_delta:
            return f"{name}_delta_exceeded:{delta:.2f}>{max_delta:.2f}"
        if before < threshold and after >= near_max:
            return f"{name}_jump_to_near_max:{before:.2f}->{after:.2f}"
    return None


def accepts_refinement(current: float, refined: float) -> bool:
    """A pass never replaces the selected variant with a lower-scoring one."""
    return refined >= current
