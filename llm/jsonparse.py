from __future__ import annotations

import json
import re
from typing import Any

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_DANGLING_TAILS = (
    re.compile(r',\s*"[^"]*"\s*:\s*$'),
    re.compile(r',\s*"[^"]*$'),
    re.compile(r",\s*\{[^{}\[\]]*$"),
    re.compile(r",\s*\[[^\[\]{}]*$"),
    re.compile(r",\s*[^,\]}]*$"),
)


class JSONParseError(ValueError):
    pass


def _normalize(content: str) -> str:
    text = content.replace("\r\n", "\n")
    text = text.replace("“", '"').replace("”", '"')
    text = text.replace("‘", "'").replace("’", "'")
    text = text.lstrip("﻿")
    text = _CONTROL_CHARS.sub("", text)
    return text.replace("\t", " ").strip()


def _extract(content: str) -> str:
    trimmed = content.strip()
    if trimmed.startswith("```"):
        return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", trimmed)).strip()
    first = trimmed.find("{")
    last = trimmed.rfind("}")
    if first != -1 and last > first:
        return trimmed[first : last + 1].strip()
    return trimmed


def _escape_newlines_in_strings(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def _remove_unmatched_closers(text: str) -> str:
    out: list[str] = []
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]":
            expected = "{" if ch == "}" else "["
            if not stack or stack[-1] != expected:
                continue
            stack.pop()
        out.append(ch)
    return "".join(out)


def _strip_trailing_commas(text: str) -> str:
    for _ in range(5):
        nxt = _TRAILING_COMMA.sub(r"\1", text)
        if nxt == text:
            break
        text = nxt
    return text


def _strip_dangling_tail(text: str) -> str:
    for _ in range(6):
        nxt = text
        for pattern in _DANGLING_TAILS:
            nxt = pattern.sub("", nxt)
        nxt = nxt.rstrip()
        if nxt == text:
            break
        text = nxt
    return text


def _close_truncated(text: str) -> str | None:
    start = text.find("{")
    if start == -1:
        return None
    text = text[start:]
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack:
            if (stack[-1] == "{" and ch == "}") or (stack[-1] == "[" and ch == "]"):
                stack.pop()
    if in_string:
        text = text.rstrip("\\") + '"'
    for opener in reversed(stack):
        text += "}" if opener == "{" else "]"
    return text


def _candidates(content: str) -> list[str]:
    seen: dict[str, None] = {}
    for base in (_normalize(content), _normalize(_extract(content))):
        escaped = _escape_newlines_in_strings(base)
        for candidate in (
            base,
            escaped,
            _remove_unmatched_closers(escaped),
            _strip_trailing_commas(escaped),
            _strip_trailing_commas(_remove_unmatched_closers(escaped)),
        ):
            if candidate:
                seen.setdefault(candidate, None)
    return list(seen)


def _loads_object(candidate: str) -> dict[str, Any]:
    parsed = json.loads(candidate)
    if not isinstance(parsed, dict):
        raise JSONParseError("JSON root is not an object")
    return parsed


def parse_json_object(content: str) -> dict[str, Any]:
    """Parse model output into a JSON object, tolerating common formatting noise.

    Handles code fences, prose around the object, smart quotes, raw newlines
    inside strings, trailing commas and output cut off mid-object.
    """
    if not content or not content.strip():
        raise JSONParseError("Invalid JSON output: empty content")
    candidates = _candidates(content)
    last_error = "Invalid JSON output"
    for candidate in candidates:
        try:
            return _loads_object(candidate)
        except (json.JSONDecodeError, JSONParseError) as exc:
            last_error = str(exc)
    for candidate in candidates:
        repaired = _close_truncated(_strip_dangling_tail(candidate))
        if not repaired:
            continue
        try:
            return _loads_object(_strip_trailing_commas(repaired))
        except (json.JSONDecodeError, JSONParseError) as exc:
            last_error = str(exc)
    raise JSONParseError(f"Invalid JSON output: {last_error}")
