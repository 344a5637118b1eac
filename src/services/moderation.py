"""
Content moderation - toxicity, PII, brand safety and required keywords.

Policy failures come back as a ModerationResult, never as exceptions.
The toxicity check fails open: if the moderation API is down, content is
not blocked on that check alone.
"""
import logging
import re
from typing import Optional

from src.schemas.pipeline import ModerationResult, Violation

logger = logging.getLogger(__name__)

# Violation types that never block on their own
SOFT_VIOLATION_TYPES = frozenset({"missing_required"})

PII_PATTERNS = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "credit_card": re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
}


class ContentModerator:
    """Runs every check and folds them into one verdict."""

    def __init__(self, openai_client=None):
        self._client = openai_client

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            from src.config import get_settings
            settings = get_settings()
            if not settings.openai_api_key:
                return None
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=(settings.openai_base_url or None),
                timeout=settings.openai_timeout_seconds,
            )
        return self._client

    async def moderate(self, text: str, brand) -> ModerationResult:
        violations: list[Violation] = []
        scores: list[float] = []

        toxicity = await self.check_toxicity(text)
        scores.append(toxicity["score"])
        if toxicity["flagged"]:
            violations.append(Violation(
                type="toxicity",
                message="Content flagged as potentially toxic",
                details=toxicity["categories"],
            ))

        pii = self.detect_pii(text)
        scores.append(0.5 if pii else 1.0)
        if pii:
            violations.append(Violation(
                type="pii",
                message="Content contains personally identifiable information",
                details=pii,
            ))

        blocked = self.check_brand_safety(text, brand)
        scores.append(0.0 if blocked else 1.0)
        if blocked:
            violations.append(Violation(
                type="brand_safety",
                message="Content contains blocked terms",
                details=blocked,
            ))

        missing = self.check_required_keywords(text, brand)
        scores.append(0.8 if missing else 1.0)
        if missing:
            violations.append(Violation(
                type="missing_required",
                message="Content is missing required keywords",
                details=missing,
            ))

        score = sum(scores) / len(scores)
        passed = all(v.type in SOFT_VIOLATION_TYPES for v in violations)

        logger.info(
            "Moderation: passed=%s score=%.2f violations=%s",
            passed, score, [v.type for v in violations],
        )
        return ModerationResult(passed=passed, score=round(score, 4), violations=violations)

    async def check_toxicity(self, text: str) -> dict:
        """OpenAI moderation endpoint. Any failure counts as not flagged."""
        client = self._get_client()
        if client is None:
            return {"flagged": False, "score": 1.0, "categories": {}}

        from src.config import get_settings
        try:
            response = await client.moderations.create(
                model=get_settings().openai_moderation_model,
                input=text,
            )
            result = response.results[0]
        except Exception as e:
            logger.warning("Toxicity check unavailable, passing content: %s", str(e))
            return {"flagged": False, "score": 1.0, "categories": {}}

        categories = _flagged_categories(result.categories)
        return {
            "flagged": bool(result.flagged),
            "score": 0.0 if result.flagged else 1.0,
            "categories": categories,
        }

    @staticmethod
    def detect_pii(text: str) -> dict:
        found = {}
        for name, pattern in PII_PATTERNS.items():
            matches = pattern.findall(text or "")
            if matches:
                found[name] = len(matches)
        return found

    @staticmethod
    def check_brand_safety(text: str, brand) -> list[str]:
        blocklist = (brand.style_guide or {}).get("blocklist") or []
        lowered = (text or "").lower()
        return [term for term in blocklist if term and term.lower() in lowered]

    @staticmethod
    def check_required_keywords(text: str, brand) -> list[str]:
        required = brand.setting("required_keywords") or []
        lowered = (text or "").lower()
        return [kw for kw in required if kw and kw.lower() not in lowered]


def _flagged_categories(categories) -> dict:
    if categories is None:
        return {}
    if hasattr(categories, "model_dump"):
        categories = categories.model_dump()
    return {k: v for k, v in dict(categories).items() if v}


_moderator: Optional[ContentModerator] = None


def get_moderator() -> ContentModerator:
    global _moderator
    if _moderator is None:
        _moderator = ContentModerator()
    return _moderator
