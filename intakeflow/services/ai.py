"""
AI service - OpenAI primary, Anthropic fallback.
Provider calls carry their own client timeouts; the classifier adds an overall
asyncio timeout on top. Tracks latency and token usage for every call.

Unlike a best-effort reply generator, failures here raise: a classification that
cannot be produced must be retried by the queue, not guessed.
"""
import logging
import re
import time
from typing import Optional

from intakeflow.utils.errors import TransientError

logger = logging.getLogger(__name__)


def _sanitize_output_text(text: str) -> str:
    """Remove hidden reasoning blocks returned by some providers."""
    if not text:
        return ""
    cleaned = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL | re.IGNORECASE)
    return cleaned.strip()


async def generate_response(
    system_prompt: str,
    user_message: str,
    max_tokens: Optional[int] = None,
    temperature: float = 0.0,
) -> dict:
    """
    Generate an AI completion. OpenAI primary, Anthropic fallback.

    Returns:
        {
            "content": str,
            "provider": str,
            "model": str,
            "latency_ms": int,
            "input_tokens": int,
            "output_tokens": int,
        }

    Raises:
        TransientError: when every configured provider fails or none is configured.
    """
    from intakeflow.config import get_settings
    settings = get_settings()

    errors = []

    if settings.openai_api_key:
        try:
            return await _generate_openai(system_prompt, user_message, max_tokens, temperature)
        except Exception as e:
            logger.warning("OpenAI failed: %s", e.__class__.__name__)
            errors.append(f"openai: {e.__class__.__name__}")

    if settings.anthropic_api_key:
        try:
            return await _generate_anthropic(system_prompt, user_message, max_tokens, temperature)
        except Exception as e:
            logger.warning("Anthropic fallback failed: %s", e.__class__.__name__)
            errors.append(f"anthropic: {e.__class__.__name__}")

    if not errors:
        raise TransientError("No AI provider available (check API keys)")
    raise TransientError("AI providers failed: " + "; ".join(errors))


async def _generate_openai(
    system_prompt: str,
    user_message: str,
    max_tokens: Optional[int],
    temperature: float,
) -> dict:
    """Generate response using OpenAI API."""
    from openai import AsyncOpenAI
    from intakeflow.config import get_settings
    settings = get_settings()

    model = settings.openai_model
    client = AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=(settings.openai_base_url or None),
        timeout=settings.openai_timeout_seconds,
    )

    start = time.monotonic()
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens or settings.openai_max_tokens,
        temperature=temperature,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
    )
    latency_ms = int((time.monotonic() - start) * 1000)

    content = response.choices[0].message.content if response.choices else ""
    return {
        "content": _sanitize_output_text(content or ""),
        "provider": "openai",
        "model": model,
        "latency_ms": latency_ms,
        "input_tokens": response.usage.prompt_tokens if response.usage else 0,
        "output_tokens": response.usage.completion_tokens if response.usage else 0,
    }


async def _generate_anthropic(
    system_prompt: str,
    user_message: str,
    max_tokens: Optional[int],
    temperature: float,
) -> dict:
    """Generate response using Anthropic Claude API."""
    from anthropic import AsyncAnthropic
    from intakeflow.config import get_settings
    settings = get_settings()

    model = settings.anthropic_model
    client = AsyncAnthropic(
        api_key=settings.anthropic_api_key,
        timeout=settings.anthropic_timeout_seconds,
    )

    start = time.monotonic()
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens or settings.anthropic_max_tokens,
        temperature=temperature,
        system=system_prompt,
        messages=[{"role": "user", "content": user_message}],
    )
    latency_ms = int((time.monotonic() - start) * 1000)

    content = ""
    for block in response.content:
        if block.type == "text":
            content += block.text

    return {
        "content": _sanitize_output_text(content),
        "provider": "anthropic",
        "model": model,
        "latency_ms": latency_ms,
        "input_tokens": response.usage.input_tokens if response.usage else 0,
        "output_tokens": response.usage.output_tokens if response.usage else 0,
    }
