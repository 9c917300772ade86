from __future__ import annotations

import pytest

from generation.profile import ScoreWeights, load_profile, normalize_weights, quality_plan, quality_threshold
from generation.scoring import accepts_refinement, composite_score, inflation_check, static_guard
from generation.types import SUBSCORE_KEYS, QualityEvaluation


def _evaluation(score: float, subscore: float | None = None) -> QualityEvaluation:
    value = score if subscore is None else subscore
    return QualityEvaluation(score=score, subscores={key: value for key in SUBSCORE_KEYS})


@pytest.mark.parametrize(
    "weights",
    [
        None,
        {"judge": 0.72, "heuristic": 0.28},
        {"judge": 3, "heuristic": 1},
        {"judge": 1, "heuristic": 0},
        {"judge": 0, "heuristic": 0},
        {"judge": -2, "heuristic": "x"},
        {"judge": float("inf"), "heuristic": 0.2},
        ScoreWeights(judge=0.5, heuristic=0.5),
    ],
)
def test_normalized_weights_always_sum_to_one(weights) -> None:
    judge, heuristic = normalize_weights(weights)

    assert judge + heuristic == pytest.approx(1.0)
    assert 0.05 <= judge <= 0.95


def test_normalized_weights_clamp_judge_share() -> None:
    assert normalize_weights({"judge": 3, "heuristic": 1}) == (0.75, 0.25)
    assert normalize_weights({"judge": 1, "heuristic": 0}) == (0.95, 0.05)
    assert normalize_weights({"judge": 0, "heuristic": 1}) == (0.05, 0.95)
    assert normalize_weights({"judge": 0, "heuristic": 0}) == (0.72, 0.28)


def test_composite_without_judge_is_heuristic_score() -> None:
    assert composite_score(_evaluation(6.4), None, (0.72, 0.28)) == 6.4


def test_composite_blends_and_penalizes_weak_judge_subscores() -> None:
    strong = composite_score(_evaluation(6.0), _evaluation(8.0), (0.72, 0.28))
    weak = composite_score(_evaluation(6.0), _evaluation(8.0, subscore=1.0), (0.72, 0.28))

    assert strong == pytest.approx(7.44)
    assert weak == pytest.approx(7.44 - 0.12)


def test_quality_plan_clamps_settings() -> None:
    profile = load_profile({"quality": {"mode": "standard", "variationCount": 3, "refinePasses": 1}})

    plan = quality_plan(profile)

    assert (plan.mode, plan.variation_count, plan.refine_passes) == ("standard", 3, 1)


def test_max_mode_raises_thresholds(monkeypatch) -> None:
    monkeypatch.delenv("QUALITY_THRESHOLD_LINKEDIN", raising=False)
    standard = load_profile({"quality": {"mode": "standard"}})
    maximum = load_profile({"quality": {"mode": "max"}})

    assert quality_threshold("linkedin", standard) == 7.4
    assert quality_threshold("linkedin", maximum) == 7.6


def test_threshold_env_override_is_clamped(monkeypatch) -> None:
    monkeypatch.setenv("QUALITY_THRESHOLD_X", "12")
    profile = load_profile({"quality": {"mode": "standard"}})

    assert quality_threshold("x", profile) == 10.0


def test_inflation_check_flags_large_heuristic_delta(monkeypatch) -> None:
    monkeypatch.delenv("INFLATION_GUARD_MAX_DELTA", raising=False)
    monkeypatch.delenv("INFLATION_GUARD_NEAR_MAX", raising=False)

    reason = inflation_check(4.0, 9.5, 5.0, 5.0, 7.6)

    assert reason == "heuristic_delta_exceeded:5.50>2.50"


def test_inflation_check_flags_jump_to_near_max(monkeypatch) -> None:
    monkeypatch.delenv("INFLATION_GUARD_MAX_DELTA", raising=False)
    monkeypatch.delenv("INFLATION_GUARD_NEAR_MAX", raising=False)

    assert inflation_check(7.2, 7.6, 7.3, 9.6, 7.6) == "judge_jump_to_near_max:7.30->9.60"
    assert inflation_check(7.2, 7.9, 7.3, 8.1, 7.6) is None


def test_inflation_limits_follow_environment(monkeypatch) -> None:
    monkeypatch.setenv("INFLATION_GUARD_MAX_DELTA", "1.0")

    assert inflation_check(5.0, 6.5, None, None, 7.0) == "heuristic_delta_exceeded:1.50>1.00"


def test_refinement_never_accepts_lower_score() -> None:
    assert accepts_refinement(7.0, 7.0) is True
    assert accepts_refinement(7.0, 7.3) is True
    assert accepts_refinement(7.0, 6.99) is False


def test_static_guard_caps_unconfirmed_perfect_score() -> None:
    outcome = static_guard(10.0, _evaluation(10.0), None)

    assert outcome.applied is True
    assert outcome.score == 9.45
    assert outcome.reason == "hard_cap_without_judge_confirmation"


def test_static_guard_caps_heuristic_without_judge_support() -> None:
    outcome = static_guard(9.4, _evaluation(9.8), _evaluation(8.0))

    assert outcome.applied is True
    assert outcome.score == 8.45
    assert outcome.reason == "high_heuristic_without_judge_support"


def test_static_guard_leaves_supported_scores_alone() -> None:
    outcome = static_guard(8.2, _evaluation(8.0), _evaluation(8.3))

    assert outcome.applied is False
    assert outcome.score == 8.2
