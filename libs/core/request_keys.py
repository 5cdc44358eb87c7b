from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import quote

from libs.core.errors import ValidationError

DEFAULT_SCHEMA_VERSION = "v1"
MISSING_PLACEHOLDER = "<none>"

_WHITESPACE = re.compile(r"\s+")

LEVEL_ALIASES = {
    "entry": "beginner",
    "entry level": "beginner",
    "entry-level": "beginner",
    "junior": "beginner",
    "novice": "beginner",
    "mid": "intermediate",
    "mid level": "intermediate",
    "mid-level": "intermediate",
    "senior": "advanced",
    "expert": "advanced",
}

REGION_ALIASES = {
    "us": "usa",
    "u.s.": "usa",
    "u.s.a.": "usa",
    "united states": "usa",
    "united states of america": "usa",
    "uk": "united kingdom",
    "u.k.": "united kingdom",
    "great britain": "united kingdom",
}


@dataclass(frozen=True)
class KeyField:
    name: str
    required: bool = False
    multi: bool = False
    aliases: Mapping[str, str] | None = None


ROLE_ANALYSIS_FIELDS = (
    KeyField("role", required=True),
    KeyField("level", aliases=LEVEL_ALIASES),
    KeyField("region", aliases=REGION_ALIASES),
)

ROADMAP_FIELDS = (
    KeyField("role", required=True),
    KeyField("level", aliases=LEVEL_ALIASES),
    KeyField("region", aliases=REGION_ALIASES),
    KeyField("path"),
    KeyField("qualifiers", multi=True),
)

RESOURCE_SEARCH_FIELDS = (
    KeyField("query", required=True),
    KeyField("role"),
)

COURSE_FIELDS = (
    KeyField("topic", required=True),
    KeyField("level", aliases=LEVEL_ALIASES),
)


def normalize_value(value: Any, aliases: Mapping[str, str] | None = None) -> str:
    text = _WHITESPACE.sub(" ", str(value)).strip().casefold()
    if aliases:
        text = aliases.get(text, text)
    return text


def normalize_key(
    kind: str,
    params: Mapping[str, Any],
    fields: Sequence[KeyField],
    schema_version: str = DEFAULT_SCHEMA_VERSION,
) -> str:
    """Build the canonical cache key for one generation request.

    Every declared field is present in the key, in declaration order, so an
    absent optional value (rendered as ``<none>``) can never collide with a
    supplied one. The schema version segment lets a change to the expected
    output shape invalidate every previously cached entry.
    """
    kind_text = normalize_value(kind)
    if not kind_text:
        raise ValidationError("kind is required")
    segments = [f"kind={_escape(kind_text)}"]
    for field in fields:
        raw = params.get(field.name)
        if field.multi:
            rendered = _normalize_multi(raw, field.aliases)
        else:
            rendered = _normalize_single(raw, field.aliases)
        if rendered is None:
            if field.required:
                raise ValidationError(f"{field.name} is required")
            rendered = MISSING_PLACEHOLDER
        segments.append(f"{field.name}={rendered}")
    version = normalize_value(schema_version) or DEFAULT_SCHEMA_VERSION
    segments.append(f"schema={_escape(version)}")
    return "|".join(segments)


def _normalize_single(raw: Any, aliases: Mapping[str, str] | None) -> str | None:
    if raw is None:
        return None
    text = normalize_value(raw, aliases)
    if not text:
        return None
    return _escape(text)


def _normalize_multi(raw: Any, aliases: Mapping[str, str] | None) -> str | None:
    if raw is None:
        return None
    items: Iterable[Any] = [raw] if isinstance(raw, str) else raw
    cleaned = {normalize_value(item, aliases) for item in items if item is not None}
    cleaned.discard("")
    if not cleaned:
        return None
    return ",".join(_escape(item) for item in sorted(cleaned))


def _escape(text: str) -> str:
    # Percent-encode separators and the placeholder brackets so a literal
    # "<none>" supplied by a caller stays distinct from a missing field.
    return quote(text, safe=" ./-_+#&()'")
