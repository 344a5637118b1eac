"""
Content generation service - the AI collaborator behind every pipeline stage.
Brief, outline, draft, per-platform variants and moderation-driven rewrites.

Nothing here touches the database. Each call either returns validated output
or raises GenerationError, which the task processor treats as retryable.
"""
import json
import logging
from typing import Optional

from pydantic import ValidationError

from src.schemas.pipeline import GeneratedDraft, GeneratedVariant, OutlineSection
from src.services.ai import generate_response, parse_json_content

logger = logging.getLogger(__name__)

# Substrings that mean retrying the same call will not help
CRITICAL_ERROR_PATTERNS = (
    "quota",
    "rate limit",
    "authentication",
    "unauthorized",
    "invalid api key",
)

# Hard length limits per platform (characters)
PLATFORM_LIMITS = {
    "website": None,
    "facebook": 63206,
    "twitter": 280,
    "linkedin": 3000,
    "instagram": 2200,
}

PLATFORM_GUIDANCE = {
    "website": "Full article in markdown with ## headings. Keep the body intact, add a 1-2 sentence excerpt.",
    "facebook": "Conversational post, 80-250 words, one clear takeaway, end with a question.",
    "twitter": "Single tweet under 260 characters including hashtags. One insight, no thread.",
    "linkedin": "Professional post, 150-300 words, hook in the first line, business framing.",
    "instagram": "Caption under 2000 characters, short paragraphs, 5-10 relevant hashtags at the end.",
}

BRIEF_PROMPT = """Write a content strategy brief for the topic below.

Topic: {title}
Description: {description}
Keywords: {keywords}
Sources: {sources}

Cover: target audience, angle, key message, 3-5 supporting points, call to action,
and SEO focus keyword. Plain text, under 300 words."""

OUTLINE_PROMPT = """Turn this strategy brief into an article outline.

Brief:
{brief}

Output valid JSON:
{{"sections": [{{"heading": "...", "points": ["...", "..."], "word_target": N}}]}}

4-7 sections, ordered. The first section is the introduction, the last the conclusion."""

DRAFT_PROMPT = """Write the full article for the outline below.

Topic: {title}
Outline:
{outline}

Output valid JSON:
{{"title": "...", "body": "...", "seo_metadata": {{"meta_description": "...", "keywords": ["..."], "slug": "...", "og_title": "...", "og_description": "..."}}}}

body: markdown with ## headings following the outline order.
meta_description: at most 155 characters."""

VARIANT_PROMPT = """Adapt the article below for {platform}.

Rules: {guidance}
Title: {title}

Article:
{body}

Output valid JSON:
{{"title": "...", "content": "...", "formatting": {{"hashtags": ["..."], "mentions": []}}, "metadata": {{"excerpt": "..."}}}}"""

IMPROVE_PROMPT = """Rewrite the content below following these instructions.

{instruction}

Content:
{body}

Return only the rewritten content as plain markdown, no commentary."""


class GenerationError(Exception):
    """An AI collaborator call failed. Retryable unless is_critical."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    @property
    def is_critical(self) -> bool:
        return is_critical_error(str(self))


def is_critical_error(message: str) -> bool:
    """Auth, quota and rate-limit failures: abort the fan-out instead of pressing on."""
    lowered = (message or "").lower()
    return any(pattern in lowered for pattern in CRITICAL_ERROR_PATTERNS)


def build_brand_system_prompt(brand) -> str:
    """System prompt carrying the brand's voice and style guide."""
    voice = brand.brand_voice or {}
    style = {k: v for k, v in (brand.style_guide or {}).items() if k != "blocklist"}
    parts = [f"You are the content writer for {brand.name}."]
    if voice:
        parts.append(f"Brand voice: {json.dumps(voice, default=str)}")
    if style:
        parts.append(f"Style guide: {json.dumps(style, default=str)}")
    blocklist = (brand.style_guide or {}).get("blocklist") or []
    if blocklist:
        parts.append(f"Never use these terms: {', '.join(blocklist)}")
    parts.append("No em dashes. Write for humans first, search engines second.")
    return "\n".join(parts)


async def _call(
    stage: str,
    brand,
    user_message: str,
    model_tier: str = "fast",
    max_tokens: Optional[int] = None,
    temperature: float = 0.5,
) -> str:
    result = await generate_response(
        system_prompt=build_brand_system_prompt(brand),
        user_message=user_message,
        model_tier=model_tier,
        max_tokens=max_tokens,
        temperature=temperature,
        stage=stage,
    )
    if result.get("error"):
        raise GenerationError(result["error"], stage=stage)
    content = (result.get("content") or "").strip()
    if not content:
        raise GenerationError("Empty AI response", stage=stage)
    logger.debug(
        "AI %s call: model=%s latency=%dms cost=$%.4f",
        stage, result.get("model"), result.get("latency_ms", 0), result.get("cost_usd", 0.0),
    )
    return content


async def generate_brief(topic, brand) -> str:
    """Strategy brief (free text) for a topic."""
    user_message = BRIEF_PROMPT.format(
        title=topic.title,
        description=topic.description or "",
        keywords=", ".join(topic.keywords or []),
        sources="\n".join((topic.source_urls or [])[:5]),
    )
    return await _call("brief", brand, user_message, model_tier="fast", temperature=0.4)


async def generate_outline(brief: str, brand) -> list[dict]:
    """Ordered list of section stubs."""
    content = await _call(
        "outline", brand, OUTLINE_PROMPT.format(brief=brief), model_tier="fast", temperature=0.3,
    )
    try:
        parsed = parse_json_content(content)
        raw_sections = parsed.get("sections", []) if isinstance(parsed, dict) else parsed
        sections = [OutlineSection.model_validate(s).model_dump() for s in raw_sections or []]
    except (ValueError, ValidationError, AttributeError, TypeError) as e:
        raise GenerationError(f"Invalid outline response: {e}", stage="outline") from e
    if not sections:
        raise GenerationError("Outline response had no sections", stage="outline")
    return sections


async def generate_draft(outline: list[dict], brand, topic) -> GeneratedDraft:
    """Full article body plus SEO metadata."""
    user_message = DRAFT_PROMPT.format(
        title=topic.title if topic else "",
        outline=json.dumps(outline, indent=2),
    )
    content = await _call("draft", brand, user_message, model_tier="smart", temperature=0.6)
    try:
        draft = GeneratedDraft.model_validate(parse_json_content(content))
    except (ValueError, ValidationError) as e:
        raise GenerationError(f"Invalid draft response: {e}", stage="draft") from e
    if not draft.body.strip():
        raise GenerationError("Draft response had an empty body", stage="draft")
    return draft


async def generate_variant(body: str, platform: str, brand, title: Optional[str] = None) -> GeneratedVariant:
    """Platform-formatted rendering that respects the platform's length limit."""
    user_message = VARIANT_PROMPT.format(
        platform=platform,
        guidance=PLATFORM_GUIDANCE.get(platform, "Adapt naturally for the platform."),
        title=title or "",
        body=body,
    )
    content = await _call(
        "variant", brand, user_message,
        model_tier="smart" if platform == "website" else "fast",
        temperature=0.6,
    )
    try:
        variant = GeneratedVariant.model_validate(parse_json_content(content))
    except (ValueError, ValidationError) as e:
        raise GenerationError(f"Invalid {platform} variant response: {e}", stage="variant") from e

    limit = PLATFORM_LIMITS.get(platform)
    if limit and len(variant.content) > limit:
        variant.content = variant.content[: limit - 3].rstrip() + "..."
    variant.metadata.setdefault("character_count", len(variant.content))
    return variant


async def improve_content(body: str, instruction: str, brand) -> str:
    """Rewrite a body to address moderation findings."""
    return await _call(
        "improve", brand, IMPROVE_PROMPT.format(instruction=instruction, body=body),
        model_tier="smart", temperature=0.4,
    )
