from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

SUBSCORE_KEYS = ("clarity", "depth", "originality", "applicability", "retention_potential")

VARIANT_STATUSES = ("ok", "schema_invalid", "request_failed")


@dataclass(frozen=True)
class TranscriptSegment:
    idx: int
    start_ms: int
    end_ms: int
    text: str
    tokens_est: int = 0


@dataclass
class QualityEvaluation:
    """Score plus the five subscores; produced by both the heuristic and the judge."""

    score: float
    subscores: dict[str, float]
    summary: str = ""
    weaknesses: list[str] = field(default_factory=list)

    def min_subscore(self) -> float:
        return min(self.subscores.get(key, 0.0) for key in SUBSCORE_KEYS)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GenerationVariant:
    index: int
    status: str
    pass_index: int = 0
    model_output: str | None = None
    normalized_output: dict[str, Any] | None = None
    heuristic_score: float | None = None
    heuristic_subscores: dict[str, float] | None = None
    judge_score: float | None = None
    judge_subscores: dict[str, float] | None = None
    composite_score: float | None = None
    publishability_score: float | None = None
    reason: str | None = None
    issues: list[str] = field(default_factory=list)
    selected: bool = False
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    actual_cost_usd: float | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GenerationVariant":
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)


@dataclass
class TaskDiagnostics:
    task: str
    status: str
    provider: str
    model: str
    quality_threshold: float
    publishability_threshold: float
    variants: list[GenerationVariant] = field(default_factory=list)
    quality_score: float | None = None
    quality_initial: float | None = None
    quality_final: float | None = None
    judge_quality_score: float | None = None
    publishability_score: float | None = None
    meets_quality_threshold: bool = False
    meets_publishability_threshold: bool = False
    used_heuristic_fallback: bool = False
    fallback_reason: str | None = None
    refinement_requested: bool = False
    refinement_applied: bool = False
    refine_passes_target: int = 0
    refine_passes_applied_count: int = 0
    selected_variant: int | None = None
    inflation_guard_applied: bool = False
    inflation_guard_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    actual_cost_usd: float | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def blocked(self) -> bool:
        return self.status == "blocked"

    def selected_payload(self) -> dict[str, Any] | None:
        for variant in self.variants:
            if variant.selected:
                return variant.normalized_output
        return None

    def aggregate_usage(self) -> None:
        self.prompt_tokens = sum(variant.prompt_tokens for variant in self.variants)
        self.completion_tokens = sum(variant.completion_tokens for variant in self.variants)
        self.total_tokens = sum(variant.total_tokens for variant in self.variants)
        self.estimated_cost_usd = round(sum(variant.estimated_cost_usd for variant in self.variants), 6)
        actual = [variant.actual_cost_usd for variant in self.variants if variant.actual_cost_usd is not None]
        self.actual_cost_usd = round(sum(actual), 6) if actual else None


@dataclass(frozen=True)
class TaskRunResult:
    diagnostics: TaskDiagnostics
    payload: dict[str, Any] | None

    @property
    def blocked(self) -> bool:
        return self.payload is None
