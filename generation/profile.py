from __future__ import annotations

from dataclasses import dataclass
import math
import os
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from llm.routing import TASKS

Strategy = Literal["balanced", "provocative", "educational", "contrarian", "framework", "storytelling"]
Focus = Literal[
    "balanced",
    "provocative",
    "educational",
    "contrarian",
    "framework",
    "storytelling",
    "authority",
    "conversion",
]
TargetOutcome = Literal["followers", "comments", "shares", "leads", "authority"]
AudienceLevel = Literal["cold", "warm", "hot"]
Length = Literal["short", "standard", "long"]
CtaMode = Literal["none", "comment", "share", "dm", "lead"]
RefineAction = Literal["improve", "shorten", "deepen", "provocative"]

REFINE_ACTIONS = ("improve", "shorten", "deepen", "provocative")

DEFAULT_SCORE_WEIGHTS = (0.72, 0.28)

QUALITY_THRESHOLD_BASE = {
    "analysis": 7.2,
    "reels": 7.5,
    "newsletter": 7.8,
    "linkedin": 7.4,
    "x": 7.4,
}
PUBLISHABILITY_THRESHOLD_BASE = {
    "analysis": 7.1,
    "reels": 7.7,
    "newsletter": 7.9,
    "linkedin": 7.5,
    "x": 7.5,
}
_QUALITY_MAX_BOOST = {"analysis": 0.4, "reels": 0.3, "newsletter": 0.25, "linkedin": 0.2, "x": 0.2}
_PUBLISHABILITY_MAX_BOOST = {"analysis": 0.2, "reels": 0.25, "newsletter": 0.2, "linkedin": 0.15, "x": 0.15}
THRESHOLD_CAP = 9.2


class _CamelModel(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class ScoreWeights(_CamelModel):
    judge: float = Field(default=0.72, ge=0)
    heuristic: float = Field(default=0.28, ge=0)


class QualitySettings(_CamelModel):
    mode: Literal["standard", "max"] = "max"
    variation_count: int = Field(default=4, ge=1, le=8)
    refine_passes: int = Field(default=2, ge=1, le=3)


class TaskProfile(_CamelModel):
    strategy: Strategy = "balanced"
    focus: Focus = "authority"
    target_outcome: TargetOutcome = "authority"
    audience_level: AudienceLevel = "warm"
    length: Length = "standard"
    cta_mode: CtaMode = "comment"
    score_weights: ScoreWeights = Field(default_factory=ScoreWeights)


class VoiceRules(_CamelModel):
    identity: str = "Estrategista direto, pratico, sem autoajuda"
    writing_rules: str = "Frases curtas, especificidade, linguagem concreta, sem jargao vazio e sem travessao."
    banned_terms: str = "incrivel, revolucionario, sem esforco, segredo absoluto"
    signature_phrases: str = "na pratica, proximo passo, decisao editorial"


class PerformanceEntry(_CamelModel):
    wins: str = ""
    avoid: str = ""
    kpi: str = ""


_DEFAULT_TASKS: dict[str, dict[str, Any]] = {
    "analysis": {
        "strategy": "balanced",
        "focus": "authority",
        "target_outcome": "authority",
        "audience_level": "cold",
        "length": "standard",
        "cta_mode": "none",
        "score_weights": {"judge": 0.72, "heuristic": 0.28},
    },
    "reels": {
        "strategy": "provocative",
        "focus": "provocative",
        "target_outcome": "followers",
        "audience_level": "warm",
        "length": "standard",
        "cta_mode": "comment",
        "score_weights": {"judge": 0.76, "heuristic": 0.24},
    },
    "newsletter": {
        "strategy": "educational",
        "focus": "authority",
        "target_outcome": "authority",
        "audience_level": "warm",
        "length": "long",
        "cta_mode": "lead",
        "score_weights": {"judge": 0.74, "heuristic": 0.26},
    },
    "linkedin": {
        "strategy": "contrarian",
        "focus": "authority",
        "target_outcome": "comments",
        "audience_level": "warm",
        "length": "standard",
        "cta_mode": "comment",
        "score_weights": {"judge": 0.72, "heuristic": 0.28},
    },
    "x": {
        "strategy": "provocative",
        "focus": "provocative",
        "target_outcome": "shares",
        "audience_level": "cold",
        "length": "short",
        "cta_mode": "share",
        "score_weights": {"judge": 0.73, "heuristic": 0.27},
    },
}

_DEFAULT_KPI = {
    "analysis": "clareza e densidade de insight",
    "reels": "follows e compartilhamentos",
    "newsletter": "tempo de leitura e respostas",
    "linkedin": "comentarios qualificados e reposts",
    "x": "shares e replies qualificados",
}


class GenerationProfile(_CamelModel):
    audience: str = "Empreendedores e criadores digitais B2B"
    goal: str = "Gerar autoridade com aplicacao pratica e ampliar distribuicao multicanal"
    tone: str = "Direto, estrategico e didatico"
    language: str = "pt-BR"
    quality: QualitySettings = Field(default_factory=QualitySettings)
    voice: VoiceRules = Field(default_factory=VoiceRules)
    performance_memory: dict[str, PerformanceEntry] = Field(default_factory=dict)
    tasks: dict[str, TaskProfile] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_task_defaults(self) -> "GenerationProfile":
        unknown = (set(self.tasks) | set(self.performance_memory)) - set(TASKS)
        if unknown:
            raise ValueError(f"unknown task(s) in profile: {sorted(unknown)}")
        for task in TASKS:
            if task not in self.tasks:
                self.tasks[task] = TaskProfile.model_validate(_DEFAULT_TASKS[task])
            if task not in self.performance_memory:
                self.performance_memory[task] = PerformanceEntry(kpi=_DEFAULT_KPI[task])
        return self

    def task_profile(self, task: str) -> TaskProfile:
        return self.tasks[task]

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def default_profile() -> GenerationProfile:
    return GenerationProfile()


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_profile(
    data: dict[str, Any] | GenerationProfile | None,
    base: GenerationProfile | None = None,
) -> GenerationProfile:
    """Build a profile from a (possibly partial, camelCase or snake_case) mapping.

    Missing fields fall back to ``base``, or to the product defaults when no
    base is given; unknown fields are rejected.
    """
    if isinstance(data, GenerationProfile):
        return data.model_copy(deep=True)
    fallback = base.model_copy(deep=True) if base is not None else default_profile()
    if not data:
        return fallback
    base_fields = fallback.model_dump(by_alias=False)
    patch = GenerationProfile.model_validate(data).model_dump(by_alias=False, exclude_unset=True)
    tasks_patch = {}
    raw_tasks = data.get("tasks") if isinstance(data.get("tasks"), dict) else {}
    for task, raw in raw_tasks.items():
        if isinstance(raw, dict):
            task_model = TaskProfile.model_validate(raw)
            tasks_patch[task] = task_model.model_dump(by_alias=False, exclude_unset=True)
    patch["tasks"] = tasks_patch
    return GenerationProfile.model_validate(_deep_merge(base_fields, patch))


def normalize_weights(weights: ScoreWeights | dict[str, Any] | None) -> tuple[float, float]:
    """Return ``(judge, heuristic)`` summing to exactly 1.

    Raw values are scaled by their sum, then the judge share is held inside
    0.05..0.95 so neither scorer ever decides alone.
    """
    if isinstance(weights, ScoreWeights):
        raw_judge, raw_heuristic = weights.judge, weights.heuristic
    elif isinstance(weights, dict):
        raw_judge, raw_heuristic = weights.get("judge"), weights.get("heuristic")
    else:
        raw_judge, raw_heuristic = DEFAULT_SCORE_WEIGHTS

    def _valid(value: Any) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not math.isfinite(value) or value < 0:
            return None
        return float(value)

    judge = _valid(raw_judge)
    heuristic = _valid(raw_heuristic)
    if judge is None:
        judge = DEFAULT_SCORE_WEIGHTS[0]
    if heuristic is None:
        heuristic = DEFAULT_SCORE_WEIGHTS[1]
    total = judge + heuristic
    if total <= 0:
        judge, heuristic = DEFAULT_SCORE_WEIGHTS
        total = 1.0
    judge_share = round(max(0.05, min(0.95, judge / total)), 3)
    return judge_share, round(1.0 - judge_share, 3)


@dataclass(frozen=True)
class QualityPlan:
    mode: str
    variation_count: int
    refine_passes: int


def quality_plan(profile: GenerationProfile) -> QualityPlan:
    quality = profile.quality
    return QualityPlan(
        mode=quality.mode,
        variation_count=max(1, min(8, quality.variation_count)),
        refine_passes=max(1, min(3, quality.refine_passes)),
    )


def _env_threshold(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(0.0, min(10.0, value))


def quality_threshold(task: str, profile: GenerationProfile) -> float:
    base = _env_threshold(f"QUALITY_THRESHOLD_{task.upper()}", QUALITY_THRESHOLD_BASE[task])
    if profile.quality.mode != "max":
        return base
    return round(min(THRESHOLD_CAP, base + _QUALITY_MAX_BOOST[task]), 2)


def publishability_threshold(task: str, profile: GenerationProfile) -> float:
    base = _env_threshold(
        f"PUBLISHABILITY_THRESHOLD_{task.upper()}", PUBLISHABILITY_THRESHOLD_BASE[task]
    )
    if profile.quality.mode != "max":
        return base
    return round(min(THRESHOLD_CAP, base + _PUBLISHABILITY_MAX_BOOST[task]), 2)


EVIDENCE_ONLY_DIRECTIVE = (
    "Regenerar estritamente com base no evidence map do SRT. Nao inventar numero, exemplo ou entidade."
)


def _clean_instruction(instruction: str | None) -> str:
    if not instruction:
        return ""
    return " ".join(instruction.split())[:600]


def tuned_profile_for_refinement(
    profile: GenerationProfile,
    task: str,
    action: str,
    instruction: str | None = None,
    evidence_only: bool = False,
) -> GenerationProfile:
    if action not in REFINE_ACTIONS:
        raise ValueError(f"unknown refine action: {action}")
    tuned = profile.model_copy(deep=True)
    tuned.quality.mode = "max"
    tuned.quality.variation_count = max(5, tuned.quality.variation_count)
    tuned.quality.refine_passes = 3
    task_cfg = tuned.tasks[task]

    if action == "shorten":
        task_cfg.length = "short"
    elif action == "deepen":
        task_cfg.length = "long"
        if task == "reels":
            task_cfg.focus = "educational"
            task_cfg.strategy = "educational"
        else:
            task_cfg.focus = "framework"
            task_cfg.strategy = "framework"
    elif action == "provocative":
        task_cfg.strategy = "provocative"
        task_cfg.focus = "provocative"
        if task in ("reels", "linkedin", "x"):
            task_cfg.target_outcome = "followers"
    elif task_cfg.length == "short":
        task_cfg.length = "standard"

    cleaned = _clean_instruction(instruction)
    memory = tuned.performance_memory[task]
    extra = []
    if cleaned:
        extra.append(f"Direcao do editor: {cleaned}")
        tuned.voice.writing_rules = (
            f"{tuned.voice.writing_rules} Priorize esta direcao do editor: {cleaned}"
        )[:800]
    if evidence_only:
        extra.append(EVIDENCE_ONLY_DIRECTIVE)
        tuned.voice.writing_rules = (
            f"{tuned.voice.writing_rules} Use apenas fatos presentes no SRT e no evidence map."
        )[:800]
    if extra:
        memory.wins = " | ".join(part for part in [memory.wins, *extra] if part.strip())[:500]
    return tuned
