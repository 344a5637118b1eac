"""
AI collaborator - one entry point for every generation stage.

Providers are tried in order (Anthropic, then OpenAI) and the first one that
answers wins. generate_response() never raises: failures come back in the
"error" field so callers decide what is retryable.

Spend is tracked per UTC day in Redis, split by pipeline stage, and a daily
cap stops all generation once reached.
"""
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

# USD per million tokens (input/output)
COST_TABLE = {
    "claude-haiku-4-5-20251001": {"input": 1.00, "output": 5.00},
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
}
DEFAULT_COST = {"input": 1.0, "output": 5.0}

PROVIDERS = ("anthropic", "openai")
SPEND_TTL = 2 * 86400


def spend_key(day: Optional[datetime] = None) -> str:
    from src.utils.cache import make_key
    day = day or datetime.now(timezone.utc)
    return make_key("ai", "spend", day.strftime("%Y-%m-%d"))


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    costs = COST_TABLE.get(model, DEFAULT_COST)
    return (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000


def clean_output(text: Optional[str]) -> str:
    """Drop <think> blocks some models emit ahead of the answer."""
    if not text:
        return ""
    return re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL | re.IGNORECASE).strip()


def parse_json_content(content: str) -> Any:
    """Parse a JSON reply, tolerating ```json fences. Raises ValueError."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0].strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"JSON parse error: {e}") from e


async def get_spend_today() -> dict[str, float]:
    """Stage -> USD spent today. Empty when Redis is unreachable."""
    try:
        from src.utils.cache import get_redis
        redis = await get_redis()
        raw = await redis.hgetall(spend_key()) or {}
    except Exception as e:
        logger.debug("Spend lookup failed: %s", str(e))
        return {}
    return {str(k): float(v) for k, v in raw.items()}


async def budget_exhausted(budget_usd: float) -> tuple[bool, float]:
    """(exhausted, spent_today). Fails open: no Redis means no cap."""
    spent = sum((await get_spend_today()).values())
    return spent >= budget_usd, spent


async def record_spend(stage: str, cost_usd: float) -> None:
    if cost_usd <= 0:
        return
    try:
        from src.utils.cache import get_redis
        redis = await get_redis()
        key = spend_key()
        pipe = redis.pipeline()
        pipe.hincrbyfloat(key, stage, cost_usd)
        pipe.expire(key, SPEND_TTL)
        await pipe.execute()
    except Exception as e:
        logger.debug("Spend recording failed: %s", str(e))


def error_result(message: str) -> dict:
    return {
        "content": "",
        "provider": "none",
        "model": "none",
        "latency_ms": 0,
        "cost_usd": 0.0,
        "input_tokens": 0,
        "output_tokens": 0,
        "error": message,
    }


def _provider_options(settings, provider: str, model_tier: str) -> tuple[str, int, int]:
    """(model, max_tokens, timeout) for a provider at a tier."""
    tier = "smart" if model_tier == "smart" else "fast"
    return (
        getattr(settings, f"{provider}_model_{tier}"),
        getattr(settings, f"{provider}_max_tokens_{tier}"),
        getattr(settings, f"{provider}_timeout_seconds"),
    )


def _configured_providers(settings) -> list[str]:
    return [p for p in PROVIDERS if getattr(settings, f"{p}_api_key", "")]


async def generate_response(
    system_prompt: str,
    user_message: str,
    model_tier: str = "fast",
    max_tokens: Optional[int] = None,
    temperature: float = 0.5,
    stage: str = "general",
) -> dict:
    """
    Run one completion against the first provider that answers.

    model_tier picks between the "fast" and "smart" model of each provider;
    stage only labels the spend. Returns
    {content, provider, model, latency_ms, cost_usd, input_tokens, output_tokens, error}.
    """
    from src.config import get_settings
    settings = get_settings()

    exhausted, spent = await budget_exhausted(settings.ai_daily_budget_usd)
    if exhausted:
        logger.warning(
            "AI daily budget reached: $%.4f of $%.2f", spent, settings.ai_daily_budget_usd,
            extra={"stage": stage},
        )
        # Worded so the critical-error heuristic aborts fan-out stages
        return error_result(f"Daily AI quota exceeded (${spent:.2f}/${settings.ai_daily_budget_usd:.2f})")

    providers = _configured_providers(settings)
    if not providers:
        return error_result("No AI provider available (check API keys)")

    errors = []
    for provider in providers:
        model, default_tokens, timeout = _provider_options(settings, provider, model_tier)
        call = _CALLS[provider]
        start = time.monotonic()
        try:
            content, input_tokens, output_tokens = await call(
                settings, model, system_prompt, user_message,
                max_tokens or default_tokens, temperature, timeout,
            )
        except Exception as e:
            logger.error("%s generation failed: %s", provider, str(e), extra={"stage": stage})
            errors.append(f"{provider}: {e}")
            continue

        cost = calculate_cost(model, input_tokens, output_tokens)
        await record_spend(stage, cost)
        return {
            "content": clean_output(content),
            "provider": provider,
            "model": model,
            "latency_ms": int((time.monotonic() - start) * 1000),
            "cost_usd": cost,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "error": None,
        }

    return error_result("; ".join(errors))


async def _call_anthropic(settings, model, system_prompt, user_message, max_tokens, temperature, timeout):
    from anthropic import AsyncAnthropic

    client = AsyncAnthropic(api_key=settings.anthropic_api_key, timeout=timeout)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system_prompt,
        messages=[{"role": "user", "content": user_message}],
    )
    text = "".join(block.text for block in response.content if block.type == "text")
    usage = response.usage
    return text, (usage.input_tokens if usage else 0), (usage.output_tokens if usage else 0)


async def _call_openai(settings, model, system_prompt, user_message, max_tokens, temperature, timeout):
    from openai import AsyncOpenAI

    client = AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=(settings.openai_base_url or None),
        timeout=timeout,
    )
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
    )
    text = response.choices[0].message.content if response.choices else ""
    usage = response.usage
    return text, (usage.prompt_tokens if usage else 0), (usage.completion_tokens if usage else 0)


_CALLS = {
    "anthropic": _call_anthropic,
    "openai": _call_openai,
}
