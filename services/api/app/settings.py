from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_optional_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class ApiSettings:
    redis_url: str = "redis://redis:6379/0"
    cache_backend: str = "sql"
    schema_version: str = "v1"
    llm_provider: str = "mock"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com"
    openai_temperature: Optional[float] = 0.7
    openai_max_output_tokens: Optional[int] = None
    openai_timeout_s: Optional[float] = None
    openai_max_retries: Optional[int] = None
    generation_timeout_s: float = 60.0
    heartbeat_s: float = 25.0
    max_pending: int = 100
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"]
    )

    @classmethod
    def from_env(cls) -> "ApiSettings":
        defaults = cls()
        origins = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", ",".join(defaults.cors_origins)).split(",")
            if origin.strip()
        ]
        temperature = _parse_optional_float(os.getenv("OPENAI_TEMPERATURE"))
        return cls(
            redis_url=os.getenv("REDIS_URL", defaults.redis_url),
            cache_backend=os.getenv("GENERATION_CACHE_BACKEND", defaults.cache_backend).strip().lower(),
            schema_version=os.getenv("GENERATION_SCHEMA_VERSION", defaults.schema_version),
            llm_provider=os.getenv("LLM_PROVIDER", defaults.llm_provider),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
            openai_base_url=os.getenv("OPENAI_BASE_URL", defaults.openai_base_url),
            openai_temperature=temperature if temperature is not None else defaults.openai_temperature,
            openai_max_output_tokens=_parse_optional_int(os.getenv("OPENAI_MAX_OUTPUT_TOKENS")),
            openai_timeout_s=_parse_optional_float(os.getenv("OPENAI_TIMEOUT_S")),
            openai_max_retries=_parse_optional_int(os.getenv("OPENAI_MAX_RETRIES")),
            generation_timeout_s=_parse_optional_float(os.getenv("GENERATION_TIMEOUT_S"))
            or defaults.generation_timeout_s,
            heartbeat_s=_parse_optional_float(os.getenv("SSE_HEARTBEAT_S")) or defaults.heartbeat_s,
            max_pending=_parse_optional_int(os.getenv("SSE_MAX_PENDING")) or defaults.max_pending,
            cors_origins=origins,
        )
