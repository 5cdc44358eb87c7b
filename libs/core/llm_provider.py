from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass
class LLMResponse:
    content: str


class LLMProviderError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LLMProvider:
    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:  # pragma: no cover - interface
        raise NotImplementedError


class MockLLMProvider(LLMProvider):
    def __init__(self, content: str = "```json\n{\"mock\": true}\n```") -> None:
        self.content = content

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:
        return LLMResponse(content=self.content)


class OpenAIProvider(LLMProvider):
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com",
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout_s: float = 30.0,
        max_retries: int = 0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_s = timeout_s
        self.max_retries = max_retries

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {"model": self.model, "messages": messages}
        if self.temperature is not None and _model_supports_temperature(self.model):
            payload["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            payload["max_tokens"] = self.max_output_tokens
        # Completions are billed per call; retries stay opt-in.
        attempts = self.max_retries + 1
        attempt = 0
        while attempt < attempts:
            request = Request(
                f"{self.base_url}/v1/chat/completions",
                data=json.dumps(payload).encode("utf-8"),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                method="POST",
            )
            try:
                with urlopen(request, timeout=self.timeout_s) as response:
                    body = response.read().decode("utf-8")
                data = json.loads(body)
                text = _extract_message_text(data)
                if not text:
                    raise LLMProviderError("OpenAI API returned empty output")
                return LLMResponse(content=text)
            except HTTPError as exc:
                detail = exc.read().decode("utf-8") if exc.fp else str(exc)
                if exc.code in RETRYABLE_STATUS_CODES and attempt < attempts - 1:
                    time.sleep(min(2**attempt, 8))
                    attempt += 1
                    continue
                raise LLMProviderError(f"OpenAI API error: {detail}", status_code=exc.code) from exc
            except (URLError, TimeoutError) as exc:
                if attempt < attempts - 1:
                    time.sleep(min(2**attempt, 8))
                    attempt += 1
                    continue
                raise LLMProviderError(f"OpenAI API connection error: {exc}") from exc
            except ValueError as exc:
                raise LLMProviderError(f"OpenAI API returned invalid JSON: {exc}") from exc
        raise LLMProviderError("OpenAI API request failed after retries")


def resolve_provider(
    provider_name: str,
    *,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    temperature: Optional[float] = None,
    max_output_tokens: Optional[int] = None,
    timeout_s: Optional[float] = None,
    max_retries: Optional[int] = None,
) -> LLMProvider:
    name = (provider_name or "mock").lower()
    if name == "openai":
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        return OpenAIProvider(
            api_key=api_key,
            model=model or "gpt-4o-mini",
            base_url=base_url or "https://api.openai.com",
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            timeout_s=timeout_s or 30.0,
            max_retries=max_retries or 0,
        )
    return MockLLMProvider()


def _extract_message_text(response: Dict[str, Any]) -> str:
    parts: list[str] = []
    for choice in response.get("choices", []):
        message = choice.get("message") or {}
        content = message.get("content")
        if isinstance(content, str):
            parts.append(content)
    return "".join(parts).strip()


def _model_supports_temperature(model: str) -> bool:
    normalized = (model or "").strip().lower()
    # GPT-5 chat completions reject a custom temperature.
    return not normalized.startswith("gpt-5")
