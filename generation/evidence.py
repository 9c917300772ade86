from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from .text import (
    count_ungrounded_numbers,
    lexical_overlap,
    lexical_tokens,
    ms_to_timestamp,
    normalize_text,
    numeric_tokens,
    segment_score,
)
from .types import TranscriptSegment

EVIDENCE_RULE = (
    "REGRA CRITICA: Nao apresentar numero factual fora do EVIDENCE_MAP. "
    "Numeros ilustrativos so com marcador explicito de exemplo hipotetico."
)


@dataclass(frozen=True)
class EvidenceLine:
    idx: int
    start: str
    end: str
    text: str
    numeric_tokens: tuple[str, ...]


@dataclass(frozen=True)
class EvidenceMap:
    source_text: str
    lines: tuple[EvidenceLine, ...]
    numbers: frozenset[str]
    lexical: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lines": [
                {
                    "idx": line.idx,
                    "start": line.start,
                    "end": line.end,
                    "text": line.text,
                    "numeric_tokens": list(line.numeric_tokens),
                }
                for line in self.lines
            ],
            "numbers": sorted(self.numbers),
        }


def pick_coverage_segments(segments: Sequence[TranscriptSegment], target: int) -> list[TranscriptSegment]:
    """Pick the strongest segment of each of ``target`` equal-width buckets."""
    if len(segments) <= target:
        return list(segments)
    target = max(1, target)
    interval = len(segments) / target
    picked: dict[int, TranscriptSegment] = {}
    for bucket in range(target):
        start = int(bucket * interval)
        end = min(len(segments), int((bucket + 1) * interval) + 1)
        window = segments[start : max(start + 1, end)]
        if not window:
            continue
        best = window[0]
        for segment in window[1:]:
            if segment_score(segment.text, segment.tokens_est) > segment_score(best.text, best.tokens_est):
                best = segment
        picked[best.idx] = best
    return sorted(picked.values(), key=lambda item: item.start_ms)


def build_evidence_map(segments: Sequence[TranscriptSegment], max_lines: int = 72) -> EvidenceMap:
    selected = pick_coverage_segments(segments, min(max_lines, max(1, len(segments))))
    lines = []
    lexical: set[str] = set()
    for segment in selected:
        text = normalize_text(segment.text, 900, 8, segment.text)
        lines.append(
            EvidenceLine(
                idx=segment.idx,
                start=ms_to_timestamp(segment.start_ms),
                end=ms_to_timestamp(segment.end_ms),
                text=text,
                numeric_tokens=tuple(numeric_tokens(text)),
            )
        )
        lexical |= lexical_tokens(text)
    source_text = " ".join(segment.text for segment in segments)
    numbers = set(numeric_tokens(source_text))
    for line in lines:
        numbers.update(line.numeric_tokens)
    lexical |= lexical_tokens(source_text)
    return EvidenceMap(
        source_text=source_text,
        lines=tuple(lines),
        numbers=frozenset(numbers),
        lexical=frozenset(lexical),
    )


def evidence_prompt_block(evidence: EvidenceMap, max_lines: int = 22) -> str:
    numbers = ", ".join(sorted(evidence.numbers)[:80])
    lines = "\n".join(
        f"[{line.idx}] {line.start}-{line.end}: {normalize_text(line.text, 320, 8, line.text)}"
        for line in evidence.lines[:max_lines]
    )
    return "\n".join(
        [
            "EVIDENCE_MAP:",
            f"NUMEROS_OBSERVADOS: {numbers}" if numbers else "NUMEROS_OBSERVADOS: nenhum",
            "TRECHOS_PRIORITARIOS:",
            lines or "sem_trechos",
            EVIDENCE_RULE,
        ]
    )


def collect_string_blocks(task: str, payload: dict[str, Any]) -> list[tuple[str, str]]:
    """Return ``(path, text)`` for every free-text block of a normalized payload."""
    blocks: list[tuple[str, str]] = []

    def add(path: str, value: Any) -> None:
        if isinstance(value, str):
            blocks.append((path, value))

    if task == "analysis":
        add("thesis", payload.get("thesis"))
        for idx, topic in enumerate(payload.get("topics") or []):
            add(f"topics[{idx}]", topic)
        for idx, item in enumerate(payload.get("recommendations") or []):
            add(f"recommendations[{idx}]", item)
        structure = payload.get("structure") or {}
        for key in ("problem", "tension", "insight", "application"):
            add(f"structure.{key}", structure.get(key))
        for idx, item in enumerate(payload.get("retentionMoments") or []):
            add(f"retentionMoments[{idx}].text", item.get("text"))
            add(f"retentionMoments[{idx}].whyItGrabs", item.get("whyItGrabs"))
        for idx, item in enumerate(payload.get("editorialAngles") or []):
            add(f"editorialAngles[{idx}].angle", item.get("angle"))
            add(f"editorialAngles[{idx}].whyStronger", item.get("whyStronger"))
        for idx, item in enumerate(payload.get("weakSpots") or []):
            add(f"weakSpots[{idx}].issue", item.get("issue"))
            add(f"weakSpots[{idx}].why", item.get("why"))
    elif task == "reels":
        for idx, clip in enumerate(payload.get("clips") or []):
            add(f"clips[{idx}].title", clip.get("title"))
            add(f"clips[{idx}].caption", clip.get("caption"))
            add(f"clips[{idx}].whyItWorks", clip.get("whyItWorks"))
    elif task == "newsletter":
        add("headline", payload.get("headline"))
        add("subheadline", payload.get("subheadline"))
        for idx, section in enumerate(payload.get("sections") or []):
            if section.get("type") == "application":
                for bullet_idx, bullet in enumerate(section.get("bullets") or []):
                    add(f"sections[{idx}].bullets[{bullet_idx}]", bullet)
                continue
            add(f"sections[{idx}].title", section.get("title"))
            add(f"sections[{idx}].text", section.get("text"))
    elif task == "linkedin":
        add("hook", payload.get("hook"))
        for idx, paragraph in enumerate(payload.get("body") or []):
            add(f"body[{idx}]", paragraph)
        add("ctaQuestion", payload.get("ctaQuestion"))
    elif task == "x":
        for idx, post in enumerate(payload.get("standalone") or []):
            add(f"standalone[{idx}]", post)
        for idx, post in enumerate(payload.get("thread") or []):
            add(f"thread[{idx}]", post)
        add("notes.style", (payload.get("notes") or {}).get("style"))
    return blocks


def _attribution_for_text(text: str, evidence: EvidenceMap) -> list[dict[str, Any]]:
    normalized = normalize_text(text, 2000, 1, text)
    if not normalized:
        return []
    scored = []
    for line in evidence.lines:
        overlap = lexical_overlap(normalized, line.text)
        ungrounded = count_ungrounded_numbers(normalized, frozenset(line.numeric_tokens))
        score = overlap * 0.78 + (0.22 if ungrounded == 0 else 0.0)
        scored.append((score, line))
    scored.sort(key=lambda item: item[0], reverse=True)
    return [
        {
            "idx": line.idx,
            "start": line.start,
            "end": line.end,
            "score": round(score, 3),
            "excerpt": normalize_text(line.text, 220, 8, line.text),
        }
        for score, line in scored[:2]
        if score >= 0.08
    ]


def source_attribution(task: str, payload: dict[str, Any], evidence: EvidenceMap) -> dict[str, list[dict[str, Any]]]:
    return {path: _attribution_for_text(text, evidence) for path, text in collect_string_blocks(task, payload)}
