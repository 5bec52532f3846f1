"""
Attendance Bot — LLM Provider Abstraction.

Single public function `complete_with_image()` that routes a vision prompt to
the configured provider. Provider is selected at first use via the
LLM_PROVIDER env var. Supports: gemini (default), anthropic, openai.
"""

from __future__ import annotations

import base64
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# (api_key, model, system, prompt, image, mime_type, max_tokens) -> text
_ProviderFn = Callable[[str, str, str, str, bytes, str, int], Awaitable[str]]

# ---------------------------------------------------------------------------
# Provider implementations
# ---------------------------------------------------------------------------


async def _complete_gemini(
    api_key: str, model: str, system: str, prompt: str,
    image: bytes, mime_type: str, max_tokens: int,
) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(
        model_name=model,
        system_instruction=system,
    )
    response = await gm.generate_content_async(
        [prompt, {"mime_type": mime_type, "data": image}],
        generation_config=genai.types.GenerationConfig(max_output_tokens=max_tokens),
    )
    return response.text


async def _complete_anthropic(
    api_key: str, model: str, system: str, prompt: str,
    image: bytes, mime_type: str, max_tokens: int,
) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        messages=[{
            "role": "user",
            "content": [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": mime_type,
                        "data": base64.b64encode(image).decode("ascii"),
                    },
                },
                {"type": "text", "text": prompt},
            ],
        }],
    )
    return response.content[0].text


async def _complete_openai(
    api_key: str, model: str, system: str, prompt: str,
    image: bytes, mime_type: str, max_tokens: int,
) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    data_url = f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        messages=[
            {"role": "system", "content": system},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            },
        ],
    )
    return response.choices[0].message.content


# ---------------------------------------------------------------------------
# Provider selection (runs once at first call)
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "gemini":    (_complete_gemini,    "gemini-2.0-flash"),
    "anthropic": (_complete_anthropic, "claude-haiku-4-5-20251001"),
    "openai":    (_complete_openai,    "gpt-4o-mini"),
}


def _select_provider() -> tuple[_ProviderFn, str, str]:
    """Read settings and return (provider_fn, model, api_key)."""
    from attendance_bot.config import settings

    provider_name = settings.LLM_PROVIDER.lower()
    if provider_name not in _PROVIDERS:
        raise ValueError(
            f"Unknown LLM_PROVIDER={provider_name!r}. "
            f"Supported: {', '.join(_PROVIDERS)}"
        )

    fn, default_model = _PROVIDERS[provider_name]
    model = settings.LLM_MODEL or default_model
    api_key = settings.LLM_API_KEY

    logger.info("LLM provider: %s, model: %s", provider_name, model)
    return fn, model, api_key


# Lazy singleton — populated on first call to complete_with_image()
_provider_fn: _ProviderFn | None = None
_model: str = ""
_api_key: str = ""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_configured() -> bool:
    """True when an API key is set, i.e. vision calls can be attempted."""
    from attendance_bot.config import settings

    return bool(settings.LLM_API_KEY)


async def complete_with_image(
    system: str,
    prompt: str,
    image: bytes,
    mime_type: str = "image/jpeg",
    max_tokens: int = 1024,
) -> str:
    """Send an image plus prompt to the configured provider and return the response text.

    Raises on API errors — callers should handle exceptions.
    """
    global _provider_fn, _model, _api_key

    if _provider_fn is None:
        _provider_fn, _model, _api_key = _select_provider()

    return await _provider_fn(_api_key, _model, system, prompt, image, mime_type, max_tokens)
