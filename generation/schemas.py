from __future__ import annotations

import re
from typing import Annotated, Any, Callable, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from llm.jsonparse import JSONParseError, parse_json_object
from .text import clamp, clean_token, ms_to_timestamp, strip_em_dash, timestamp_to_ms
from .types import TranscriptSegment

TIMESTAMP_PATTERN = r"^\d{2}:\d{2}:\d{2}\.\d{3}$"


class SchemaError(ValueError):
    pass


def _text(min_length: int, max_length: int) -> Any:
    return Annotated[str, StringConstraints(strip_whitespace=True, min_length=min_length, max_length=max_length)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


Score = Annotated[float, Field(ge=0, le=10)]


class AnalysisStructure(_Payload):
    problem: _text(8, 1600)
    tension: _text(8, 1600)
    insight: _text(8, 1600)
    application: _text(8, 1600)


class RetentionMoment(_Payload):
    text: _text(8, 1600)
    type: _text(2, 80)
    why_it_grabs: _text(8, 1600)


class EditorialAngle(_Payload):
    angle: _text(8, 1600)
    ideal_channel: _text(2, 80)
    format: _text(2, 160)
    why_stronger: _text(8, 1600)


class WeakSpot(_Payload):
    issue: _text(8, 1600)
    why: _text(8, 1600)


class AnalysisQualityScores(_Payload):
    insight_density: Score
    standalone_clarity: Score
    polarity: Score
    practical_value: Score


class AnalysisPayload(_Payload):
    thesis: _text(20, 1600)
    topics: List[_text(3, 1600)] = Field(min_length=1, max_length=12)
    content_type: Literal["educational", "provocative", "story", "framework"]
    polarity_score: Score
    recommendations: List[_text(10, 3000)] = Field(min_length=2, max_length=10)
    structure: Optional[AnalysisStructure] = None
    retention_moments: Optional[List[RetentionMoment]] = Field(default=None, max_length=16)
    editorial_angles: Optional[List[EditorialAngle]] = Field(default=None, max_length=16)
    weak_spots: Optional[List[WeakSpot]] = Field(default=None, max_length=16)
    quality_scores: Optional[AnalysisQualityScores] = None


class ClipScores(_Payload):
    hook: Score
    clarity: Score
    retention: Score
    share: Score


class ReelsClip(_Payload):
    title: _text(6, 220)
    start: Annotated[str, StringConstraints(pattern=TIMESTAMP_PATTERN)]
    end: Annotated[str, StringConstraints(pattern=TIMESTAMP_PATTERN)]
    caption: _text(40, 5000)
    hashtags: List[_text(2, 40)] = Field(min_length=1, max_length=12)
    scores: ClipScores
    why_it_works: _text(8, 2400)


class ReelsPayload(_Payload):
    clips: List[ReelsClip] = Field(min_length=1, max_length=5)


class IntroSection(_Payload):
    type: Literal["intro"]
    text: _text(10, 4000)


class InsightSection(_Payload):
    type: Literal["insight"]
    title: _text(3, 400)
    text: _text(10, 4000)


class ApplicationSection(_Payload):
    type: Literal["application"]
    bullets: List[_text(3, 1200)] = Field(min_length=2, max_length=16)


class CtaSection(_Payload):
    type: Literal["cta"]
    text: _text(10, 2000)


NewsletterSection = Annotated[
    Union[IntroSection, InsightSection, ApplicationSection, CtaSection],
    Field(discriminator="type"),
]


class NewsletterPayload(_Payload):
    headline: _text(8, 300)
    subheadline: _text(8, 2400)
    sections: List[NewsletterSection] = Field(min_length=3, max_length=16)


class LinkedinPayload(_Payload):
    hook: _text(8, 1200)
    body: List[_text(8, 3000)] = Field(min_length=2, max_length=20)
    cta_question: _text(8, 1000)


class XNotes(_Payload):
    style: _text(3, 300)


class XPayload(_Payload):
    standalone: List[_text(8, 280)] = Field(min_length=2, max_length=12)
    thread: List[_text(8, 280)] = Field(min_length=2, max_length=16)
    notes: XNotes

    @model_validator(mode="after")
    def _distinct_posts(self) -> "XPayload":
        if len({clean_token(post) for post in self.standalone}) < 2:
            raise ValueError("standalone posts must not all repeat the same text")
        return self


PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    "analysis": AnalysisPayload,
    "reels": ReelsPayload,
    "newsletter": NewsletterPayload,
    "linkedin": LinkedinPayload,
    "x": XPayload,
}

_WRAPPER_KEYS = ("output", "result", "data", "payload", "content", "response", "completion")
_TASK_KEYS = {
    "analysis": ("analysis",),
    "reels": ("reels",),
    "newsletter": ("newsletter",),
    "linkedin": ("linkedin",),
    "x": ("x", "twitter"),
}
_LIST_PREFIX = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")
_THREAD_NUMBER = re.compile(r"^\s*\d+\s*/\s*\d*")


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "" and value != []:
            return value
    return None


def _as_str(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _pick_str(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        picked = _as_str(data.get(key))
        if picked:
            return picked
    return None


def as_string_list(value: Any, split_commas: bool = False) -> list[str]:
    """Coerce model noise into a list of strings.

    Accepts real lists (of strings or ``{"text": ...}`` objects), newline
    delimited text and, when ``split_commas`` is set, comma lists.
    """
    if isinstance(value, list):
        out = []
        for item in value:
            if isinstance(item, dict):
                item = _pick_str(item, "text", "content", "body", "value", "post", "tweet", "bullet", "title")
            text = _as_str(item)
            if text:
                out.append(_LIST_PREFIX.sub("", text).strip())
        return [item for item in out if item]
    if isinstance(value, str):
        pattern = r"[\n,;]+" if split_commas else r"\n+"
        parts = (_LIST_PREFIX.sub("", part).strip() for part in re.split(pattern, value))
        return [part for part in parts if part]
    if isinstance(value, dict):
        for key in ("items", "lines", "list", "bullets", "posts", "tweets", "values"):
            nested = as_string_list(value.get(key), split_commas)
            if nested:
                return nested
    return []


def normalize_timestamp(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    ms = timestamp_to_ms(raw.strip().replace(",", "."))
    return ms_to_timestamp(ms) if ms is not None else None


def _strip_dashes(value: Any) -> Any:
    if isinstance(value, str):
        return strip_em_dash(value).strip()
    if isinstance(value, list):
        return [_strip_dashes(item) for item in value]
    if isinstance(value, dict):
        return {key: _strip_dashes(item) for key, item in value.items()}
    return value


def unwrap_task_output(task: str, data: dict[str, Any]) -> dict[str, Any]:
    for key in _WRAPPER_KEYS:
        nested = data.get(key)
        if isinstance(nested, dict):
            return unwrap_task_output(task, nested)
    for key in _TASK_KEYS[task]:
        nested = data.get(key)
        if isinstance(nested, dict):
            return nested
    return data


def _coerce_analysis(data: dict[str, Any], segments: Sequence[TranscriptSegment] | None) -> dict[str, Any]:
    out = dict(data)
    out["thesis"] = _pick_str(data, "thesis", "mainThesis", "main_thesis")
    out["topics"] = as_string_list(data.get("topics"), split_commas=True)
    out["recommendations"] = as_string_list(data.get("recommendations"))
    raw_type = _pick_str(data, "contentType", "content_type") or ""
    out["contentType"] = _normalize_content_type(raw_type)
    out.pop("content_type", None)
    scores = _first(data, "qualityScores", "quality_scores", "scores")
    if scores is not None:
        out["qualityScores"] = scores
    polarity = _first(data, "polarityScore", "polarity_score")
    if polarity is not None:
        out["polarityScore"] = polarity
    return out


def _normalize_content_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized in ("educational", "provocative", "story", "framework"):
        return normalized
    if re.search(r"provoc|polar|contrar", normalized):
        return "provocative"
    if re.search(r"story|histori|narrat", normalized):
        return "story"
    if re.search(r"framework|modelo|metod|passo|process", normalized):
        return "framework"
    return "educational"


def _normalize_hashtags(raw: Any) -> list[str]:
    tags: list[str] = []
    for item in as_string_list(raw, split_commas=True):
        for token in item.split():
            cleaned = clean_token(token)
            if cleaned and f"#{cleaned}" not in tags:
                tags.append(f"#{cleaned}")
    return tags[:12]


def _derive_clip_scores(title: str, start: str | None, end: str | None) -> dict[str, float]:
    start_ms = timestamp_to_ms(start or "") or 0
    end_ms = timestamp_to_ms(end or "") or 0
    duration_s = max(0, end_ms - start_ms) / 1000
    hook = round(clamp(5 + len(title.split()) / 3, 5, 9))
    clarity = round(clamp(8.8 - abs(duration_s - 30) / 8, 5, 9))
    retention = round(clamp((hook + clarity) / 2, 5, 9))
    return {"hook": hook, "clarity": clarity, "retention": retention, "share": retention}


def _coerce_clip(item: dict[str, Any], segments: Sequence[TranscriptSegment] | None) -> dict[str, Any]:
    title = _pick_str(item, "title", "hook", "headline") or ""
    caption = _pick_str(item, "caption", "legenda", "copy", "body") or ""
    cta = _pick_str(item, "cta", "callToAction", "call_to_action")
    if caption and cta and cta not in caption:
        caption = f"{caption}\n\n{cta}"
    start = normalize_timestamp(_first(item, "start", "startTime", "start_time"))
    end = normalize_timestamp(_first(item, "end", "endTime", "end_time"))
    if (start is None or end is None) and segments:
        by_idx = {segment.idx: segment for segment in segments}
        try:
            start_idx = int(_first(item, "startIdx", "start_idx"))
            end_idx = int(_first(item, "endIdx", "end_idx"))
        except (TypeError, ValueError):
            start_idx = end_idx = -1
        if start_idx in by_idx and end_idx in by_idx:
            start = ms_to_timestamp(by_idx[start_idx].start_ms)
            end = ms_to_timestamp(by_idx[end_idx].end_ms)
    if start is None or end is None:
        range_text = _pick_str(item, "range", "timeRange", "time_range", "timestamps") or ""
        tokens = re.findall(r"\d{1,2}:\d{2}:\d{2}(?:[.,]\d{1,3})?", range_text)
        if len(tokens) >= 2:
            start, end = normalize_timestamp(tokens[0]), normalize_timestamp(tokens[1])
    scores = item.get("scores") if isinstance(item.get("scores"), dict) else {}
    derived = _derive_clip_scores(title, start, end)
    merged_scores = {key: scores.get(key, derived[key]) for key in derived}
    return {
        "title": title,
        "start": start,
        "end": end,
        "caption": caption,
        "hashtags": _normalize_hashtags(_first(item, "hashtags", "tags", "hashTags")),
        "scores": merged_scores,
        "whyItWorks": _pick_str(item, "whyItWorks", "why_it_works", "rationale", "reason"),
    }


def _coerce_reels(data: dict[str, Any], segments: Sequence[TranscriptSegment] | None) -> dict[str, Any]:
    raw = _first(data, "clips", "reels", "items", "results")
    if isinstance(raw, dict):
        raw = [raw]
    clips = []
    for item in raw if isinstance(raw, list) else []:
        if isinstance(item, str):
            item = {"caption": item}
        if isinstance(item, dict):
            clips.append(_coerce_clip(item, segments))
    return {"clips": clips}


def _section_type(raw: str | None) -> str | None:
    value = (raw or "").strip().lower()
    if not value:
        return None
    if re.search(r"intro|abertura|opening|lead|context", value):
        return "intro"
    if re.search(r"insight|aprendizado|ponto|lesson|argument", value):
        return "insight"
    if re.search(r"application|aplic|checklist|passo|steps|framework|acao", value):
        return "application"
    if re.search(r"cta|calltoaction|call_to_action|pergunta|question|fechamento", value):
        return "cta"
    return None


def _coerce_section(section: dict[str, Any]) -> dict[str, Any] | None:
    kind = _section_type(_pick_str(section, "type", "kind", "role"))
    if kind == "intro":
        return {"type": "intro", "text": _pick_str(section, "text", "body")}
    if kind == "insight":
        return {
            "type": "insight",
            "title": _pick_str(section, "title", "headline", "topic", "name"),
            "text": _pick_str(section, "text", "body", "insight", "description"),
        }
    if kind == "application":
        return {
            "type": "application",
            "bullets": as_string_list(_first(section, "bullets", "items", "steps", "checklist")),
        }
    if kind == "cta":
        return {
            "type": "cta",
            "text": _pick_str(section, "text", "body", "question", "prompt", "callToAction", "call_to_action"),
        }
    return None


def _coerce_newsletter(data: dict[str, Any], segments: Sequence[TranscriptSegment] | None) -> dict[str, Any]:
    sections = []
    raw_sections = data.get("sections")
    if isinstance(raw_sections, list):
        for section in raw_sections:
            if isinstance(section, dict):
                coerced = _coerce_section(section)
                if coerced is not None:
                    sections.append(coerced)
    if not sections:
        intro = _pick_str(data, "intro", "opening", "lead")
        if intro:
            sections.append({"type": "intro", "text": intro})
        insights = _first(data, "insights", "keyInsights", "key_insights")
        for item in insights if isinstance(insights, list) else []:
            if isinstance(item, dict):
                sections.append(
                    {
                        "type": "insight",
                        "title": _pick_str(item, "title", "headline", "topic", "name"),
                        "text": _pick_str(item, "text", "body", "insight", "description"),
                    }
                )
            elif isinstance(item, str) and item.strip():
                title = re.split(r"[.!?]", item.strip())[0][:120]
                sections.append({"type": "insight", "title": title, "text": item.strip()})
        application = data.get("application")
        bullets = as_string_list(
            application.get("bullets") if isinstance(application, dict) else _first(data, "checklist", "steps", "application")
        )
        if bullets:
            sections.append({"type": "application", "bullets": bullets})
        cta = _pick_str(data, "cta", "callToAction", "call_to_action", "question")
        if cta:
            sections.append({"type": "cta", "text": cta})
    return {
        "headline": _pick_str(data, "headline", "title", "subject", "bestHeadline"),
        "subheadline": _pick_str(data, "subheadline", "subtitle", "dek", "subTitle", "sub_title"),
        "sections": sections,
    }


def _coerce_linkedin(data: dict[str, Any], segments: Sequence[TranscriptSegment] | None) -> dict[str, Any]:
    raw_body = _first(data, "body", "paragraphs", "postBody", "post_body", "post", "text")
    if isinstance(raw_body, str):
        paragraphs = [part.strip() for part in re.split(r"\n{2,}", raw_body) if part.strip()]
        body = paragraphs if len(paragraphs) > 1 else as_string_list(raw_body)
    else:
        body = as_string_list(raw_body)
    cta = _pick_str(data, "ctaQuestion", "cta_question", "cta", "question", "finalQuestion", "final_question")
    if cta is None:
        cta = next((item for item in reversed(body) if item.rstrip().endswith("?")), None)
    return {
        "hook": _pick_str(data, "hook", "headline", "title", "opening", "firstLine", "first_line"),
        "body": body,
        "ctaQuestion": cta,
    }


def _coerce_x(data: dict[str, Any], segments: Sequence[TranscriptSegment] | None) -> dict[str, Any]:
    posts = data.get("posts") if isinstance(data.get("posts"), dict) else {}
    standalone = as_string_list(
        _first(data, "standalone", "standalonePosts", "standalone_posts")
        or _first(posts, "standalone", "standalonePosts", "standalone_posts")
        or _first(data, "posts", "tweets")
    )
    thread = as_string_list(
        _first(data, "thread", "threadPosts", "thread_posts", "threadTweets", "thread_tweets")
        or _first(posts, "thread", "threadPosts", "thread_posts")
    )
    if not thread:
        thread = [post for post in standalone if _THREAD_NUMBER.match(post)]
        standalone = [post for post in standalone if not _THREAD_NUMBER.match(post)] or standalone
    notes = data.get("notes") if isinstance(data.get("notes"), dict) else {}
    style = _pick_str(notes, "style") or _pick_str(data, "style", "tone", "voice", "writingStyle")
    return {
        "standalone": standalone,
        "thread": thread,
        "notes": {"style": style or "Direto, especifico e orientado a acao."},
    }


_COERCERS: dict[str, Callable[[dict[str, Any], Sequence[TranscriptSegment] | None], dict[str, Any]]] = {
    "analysis": _coerce_analysis,
    "reels": _coerce_reels,
    "newsletter": _coerce_newsletter,
    "linkedin": _coerce_linkedin,
    "x": _coerce_x,
}


def _issue_summary(exc: ValidationError, max_issues: int = 3) -> str:
    parts = []
    for error in exc.errors()[:max_issues]:
        loc = ".".join(str(item) for item in error.get("loc", ())) or "root"
        parts.append(f"{loc}: {error.get('msg', 'invalid')}")
    return " | ".join(parts)


def validate_payload(task: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate an already-shaped payload (camelCase or snake_case) without coercion."""
    model = PAYLOAD_MODELS.get(task)
    if model is None:
        raise SchemaError(f"unknown task: {task}")
    try:
        parsed = model.model_validate(_strip_dashes(payload))
    except ValidationError as exc:
        raise SchemaError(f"{task}: {_issue_summary(exc)}") from exc
    return parsed.model_dump(by_alias=True, exclude_none=True)


def normalize_payload(
    task: str,
    raw: str | dict[str, Any],
    segments: Sequence[TranscriptSegment] | None = None,
) -> dict[str, Any]:
    """Turn raw model output into the normalized camelCase payload for ``task``."""
    if task not in PAYLOAD_MODELS:
        raise SchemaError(f"unknown task: {task}")
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = parse_json_object(raw)
        except JSONParseError as exc:
            raise SchemaError(f"{task}: {exc}") from exc
    data = unwrap_task_output(task, data)
    coerced = _COERCERS[task](_strip_dashes(data), segments)
    return validate_payload(task, coerced)
