"""Recover a JSON object or array from free-form completion text.

Completion output is not contractually formatted: the same prompt may come
back as a ```json fenced block, a bare fence, raw JSON, or JSON wrapped in
prose. Each strategy below is a pure function returning the parsed value or
``None``; :func:`extract_json` tries them in order and stops at the first hit.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

_JSON_FENCE = re.compile(r"```[ \t]*json[ \t]*\r?\n?(.*?)```", re.IGNORECASE | re.DOTALL)
_ANY_FENCE = re.compile(r"```[^\n`]*\r?\n?(.*?)```", re.DOTALL)
_CLOSERS = {"{": "}", "[": "]"}


@dataclass(frozen=True)
class ExtractionResult:
    value: Any = None
    strategy: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.strategy is not None


def _parse_structured(text: str) -> Any:
    candidate = text.strip()
    if not candidate:
        return None
    for _ in range(3):
        try:
            parsed = json.loads(candidate)
        except (ValueError, RecursionError):
            return None
        if isinstance(parsed, (dict, list)):
            return parsed
        if not isinstance(parsed, str):
            return None
        # Double-encoded payloads arrive as a JSON string holding JSON.
        candidate = parsed.strip()
    return None


def _from_json_fence(text: str) -> Any:
    for match in _JSON_FENCE.finditer(text):
        parsed = _parse_structured(match.group(1))
        if parsed is not None:
            return parsed
    return None


def _from_any_fence(text: str) -> Any:
    for match in _ANY_FENCE.finditer(text):
        parsed = _parse_structured(match.group(1))
        if parsed is not None:
            return parsed
    return None


def _from_whole_text(text: str) -> Any:
    return _parse_structured(text)


def _from_outer_slice(text: str) -> Any:
    starts = [index for index in (text.find("{"), text.find("[")) if index != -1]
    if not starts:
        return None
    start = min(starts)
    end = text.rfind(_CLOSERS[text[start]])
    if end <= start:
        return None
    return _parse_structured(text[start : end + 1])


STRATEGIES: List[Tuple[str, Callable[[str], Any]]] = [
    ("json_fence", _from_json_fence),
    ("any_fence", _from_any_fence),
    ("whole_text", _from_whole_text),
    ("outer_slice", _from_outer_slice),
]


def extract_json(text: Any) -> ExtractionResult:
    if not isinstance(text, str):
        return ExtractionResult(error="not_text")
    if not text.strip():
        return ExtractionResult(error="empty_text")
    for name, strategy in STRATEGIES:
        try:
            value = strategy(text)
        except Exception:  # noqa: BLE001
            value = None
        if value is not None:
            return ExtractionResult(value=value, strategy=name)
    return ExtractionResult(error="no_structured_value")
