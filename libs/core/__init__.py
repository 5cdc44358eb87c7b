__all__ = [
    "models",
    "errors",
    "events",
    "extraction",
    "request_keys",
    "prompts",
    "llm_provider",
    "generation",
    "generation_cache",
    "realtime",
    "snapshots",
    "notify",
    "logging",
]
