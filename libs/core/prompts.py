from __future__ import annotations

import json
from typing import Any

CAREER_ANALYST_SYSTEM = (
    "You are an expert career coach and tech industry analyst. Provide detailed, "
    "accurate and current information for job roles."
)
CURRICULUM_SYSTEM = (
    "You are an expert curriculum designer. Create structured, step-by-step learning paths."
)
CURATOR_SYSTEM = (
    "You are an educational content curator. Provide high-quality, up-to-date learning "
    "resources for technology and career development."
)

ROLE_ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "skills"],
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "skills": {"type": "array"},
        "tools": {"type": "array"},
        "languages": {"type": "array"},
        "frameworks": {"type": "array"},
        "resources": {"type": "array"},
    },
}

ROADMAP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "phases"],
    "properties": {
        "title": {"type": "string"},
        "phases": {"type": "array", "items": {"type": "object"}},
    },
}

RESOURCE_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {"type": "object", "required": ["title"]},
}

COURSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "modules"],
    "properties": {
        "title": {"type": "string"},
        "modules": {"type": "array", "items": {"type": "object"}},
    },
}


def _context_json(params: dict[str, Any]) -> str:
    present = {key: value for key, value in params.items() if value not in (None, "", [])}
    return json.dumps(present, ensure_ascii=False, indent=2, default=str)


def role_analysis_prompt(params: dict[str, Any]) -> str:
    return (
        f"Create a comprehensive career guide for the role: \"{params.get('role')}\".\n"
        "Return ONLY a JSON object with keys: title, description, jobGrowth, salaryRange, "
        "skills (array of {name, level, priority, timeToLearn}), tools (array of "
        "{name, category, description, difficulty}), languages (array), frameworks (array), "
        "resources (array of {name, provider, type, duration, category, url}).\n"
        "Ensure the information is realistic for the current job market.\n"
        f"Request context (JSON): {_context_json(params)}\n"
    )


def roadmap_prompt(params: dict[str, Any]) -> str:
    return (
        f"Design a learning roadmap for someone pursuing the role \"{params.get('role')}\".\n"
        "Return ONLY a JSON object with keys: title, summary, phases (array of "
        "{name, duration, goals, topics, projects}).\n"
        "Respect the experience level, region and chosen path when provided.\n"
        f"Request context (JSON): {_context_json(params)}\n"
    )


def resource_search_prompt(params: dict[str, Any]) -> str:
    return (
        f"Find 8 high-quality learning resources for: \"{params.get('query')}\".\n"
        f"Context: the user is a \"{params.get('role') or 'Learner'}\".\n"
        "Return ONLY a JSON array of objects with keys: title, description, type, category, "
        "url, platform, duration, level, free, rating, topics, language.\n"
        "Prioritize specific, well-known resources."
    )


def course_prompt(params: dict[str, Any]) -> str:
    return (
        f"Create a learning path syllabus for \"{params.get('topic')}\" at "
        f"\"{params.get('level') or 'Intermediate'}\" level.\n"
        "Return ONLY a JSON object with keys: title, description, totalDuration, modules "
        "(array of {title, description, topics, resources})."
    )
