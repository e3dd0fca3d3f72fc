"""OpenAI-compatible completion client used for extraction and synthesis."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from company_research.config import settings


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class Completion:
    text: str
    usage: Usage = field(default_factory=Usage)
    model: str = ""


class CompletionAdapter:
    """Thin wrapper that turns chat completions into (text, usage) pairs."""

    def __init__(self, openai_client: Any):
        self._client = openai_client

    async def create(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: float = 0.3,
        json_mode: bool = False,
    ) -> Completion:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._client.chat.completions.create(**kwargs)

        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        text = getattr(message, "content", None) or ""

        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            usage=Usage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
            model=getattr(response, "model", None) or model,
        )

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


def get_client() -> CompletionAdapter | None:
    """Build the completion client, or None when no API key is configured."""
    if not settings.completion_configured:
        return None

    from openai import AsyncOpenAI

    kwargs: dict[str, Any] = {"api_key": settings.openai_api_key}
    if settings.openai_base_url.strip():
        kwargs["base_url"] = settings.openai_base_url.strip()
    return CompletionAdapter(AsyncOpenAI(**kwargs))


def get_model() -> str:
    """Get the model id used for finding extraction."""
    return settings.extraction_model


def get_synthesis_model() -> str:
    return settings.synthesis_model or settings.extraction_model


_client: CompletionAdapter | None = None


def client() -> CompletionAdapter | None:
    """Get or create the shared completion client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
