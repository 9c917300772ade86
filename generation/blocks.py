"""Path-addressed reads and copy-on-write edits of normalized payloads.

Paths use mapping keys and bracketed sequence indices, e.g.
``sections[2].bullets`` or ``clips[0].caption``.
"""

from __future__ import annotations

import copy
import json
import math
import re
from typing import Any

_TOKEN = re.compile(r"\.?([A-Za-z_][A-Za-z0-9_]*)|\[(\d+)\]")
_FORBIDDEN_KEYS = frozenset({"__proto__", "prototype", "constructor", "__class__"})
_TRUTHY = frozenset({"true", "1", "sim", "yes"})
_FALSY = frozenset({"false", "0", "nao", "não", "no"})
_LIST_PREFIX = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")

PathToken = str | int


class BlockEditError(ValueError):
    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


def parse_path(path: str) -> list[PathToken]:
    raw = (path or "").strip()
    if not raw:
        raise BlockEditError("unsafe_path", "empty block path")
    tokens: list[PathToken] = []
    position = 0
    while position < len(raw):
        match = _TOKEN.match(raw, position)
        if match is None or (match.group(0).startswith(".") and position == 0):
            raise BlockEditError("unsafe_path", f"malformed block path: {path}")
        key, index = match.groups()
        if key is not None:
            if position > 0 and not match.group(0).startswith("."):
                raise BlockEditError("unsafe_path", f"malformed block path: {path}")
            if key in _FORBIDDEN_KEYS or (key.startswith("__") and key.endswith("__")):
                raise BlockEditError("unsafe_path", f"forbidden key in block path: {key}")
            tokens.append(key)
        else:
            tokens.append(int(index))
        position = match.end()
    return tokens


def _step(container: Any, token: PathToken) -> tuple[bool, Any]:
    if isinstance(token, int):
        if isinstance(container, list) and 0 <= token < len(container):
            return True, container[token]
        return False, None
    if isinstance(container, dict) and token in container:
        return True, container[token]
    return False, None


def _resolve(payload: Any, tokens: list[PathToken]) -> tuple[bool, Any]:
    current = payload
    for token in tokens:
        found, current = _step(current, token)
        if not found:
            return False, None
    return True, current


def get_block(payload: dict[str, Any], path: str) -> Any:
    found, value = _resolve(payload, parse_path(path))
    if not found:
        raise BlockEditError("path_not_found", f"block not found: {path}")
    return value


def _string_list(raw: Any) -> list[str]:
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                raw = json.loads(text)
            except json.JSONDecodeError as exc:
                raise BlockEditError("invalid_block_value", "malformed JSON array") from exc
        else:
            raw = [_LIST_PREFIX.sub("", line) for line in text.splitlines()]
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise BlockEditError("invalid_block_value", "expected a list of strings")
    items = [item.strip() for item in raw if item.strip()]
    if not items:
        raise BlockEditError("invalid_block_value", "list must not be empty")
    return items


def _number(current: int | float, raw: Any) -> int | float:
    if isinstance(raw, bool):
        raise BlockEditError("invalid_block_value", "expected a number")
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip().replace(",", "."))
        except ValueError as exc:
            raise BlockEditError("invalid_block_value", "expected a number") from exc
    else:
        raise BlockEditError("invalid_block_value", "expected a number")
    if not math.isfinite(value):
        raise BlockEditError("invalid_block_value", "number must be finite")
    if isinstance(current, int):
        if not value.is_integer():
            raise BlockEditError("invalid_block_value", "expected an integer")
        return int(value)
    return value


def _boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    token = str(raw).strip().lower()
    if token in _TRUTHY:
        return True
    if token in _FALSY:
        return False
    raise BlockEditError("invalid_block_value", "expected a boolean")


def _structured(current: list | dict, raw: Any) -> Any:
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BlockEditError("invalid_block_value", "malformed JSON value") from exc
    if not isinstance(value, type(current)):
        raise BlockEditError("invalid_block_value", f"expected a JSON {type(current).__name__}")
    return value


def coerce_block_value(current: Any, raw: Any) -> Any:
    """Coerce ``raw`` to the shape of the value it replaces."""
    if isinstance(current, list) and (not current or all(isinstance(item, str) for item in current)):
        if isinstance(raw, list) and raw and not all(isinstance(item, str) for item in raw):
            raise BlockEditError("invalid_block_value", "expected a list of strings")
        return _string_list(raw)
    if isinstance(current, (list, dict)):
        return _structured(current, raw)
    if isinstance(current, bool):
        return _boolean(raw)
    if isinstance(current, (int, float)):
        return _number(current, raw)
    if isinstance(current, str) or current is None:
        if not isinstance(raw, str) or not raw.strip():
            raise BlockEditError("invalid_block_value", "expected non-empty text")
        return raw.strip()
    raise BlockEditError("invalid_block_value", f"unsupported block type: {type(current).__name__}")


def set_block(payload: dict[str, Any], path: str, raw: Any) -> tuple[dict[str, Any], bool]:
    """Return ``(copy_with_value, True)``, or ``(payload, False)`` when the path does not exist.

    ``payload`` itself is never mutated.
    """
    tokens = parse_path(path)
    found, current = _resolve(payload, tokens)
    if not found:
        return payload, False
    value = coerce_block_value(current, raw)
    updated = copy.deepcopy(payload)
    _, parent = _resolve(updated, tokens[:-1])
    parent[tokens[-1]] = value
    return updated, True
