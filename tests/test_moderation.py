"""
Tests for src/services/moderation.py - toxicity, PII, brand safety, required keywords.
"""
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from src.services.moderation import ContentModerator


def _brand(blocklist=None, required=None):
    return SimpleNamespace(
        style_guide={"blocklist": blocklist or []},
        setting=lambda key, default=None: {"required_keywords": required or []}.get(key, default),
    )


def _openai_client(flagged=False, categories=None, error=None):
    client = MagicMock()
    if error:
        client.moderations.create = AsyncMock(side_effect=error)
    else:
        result = SimpleNamespace(flagged=flagged, categories=categories or {})
        client.moderations.create = AsyncMock(return_value=SimpleNamespace(results=[result]))
    return client


class TestDetectPii:
    def test_email_and_phone(self):
        found = ContentModerator.detect_pii("Mail jane@example.com or call 555-123-4567")
        assert found == {"email": 1, "phone": 1}

    def test_ssn_and_card(self):
        found = ContentModerator.detect_pii("SSN 123-45-6789, card 4111 1111 1111 1111")
        assert found["ssn"] == 1
        assert found["credit_card"] == 1

    def test_clean_text(self):
        assert ContentModerator.detect_pii("Rotate your API keys every 90 days.") == {}


class TestBrandSafety:
    def test_blocked_terms_case_insensitive(self):
        assert ContentModerator.check_brand_safety("A GUARANTEED fix", _brand(["guaranteed"])) == ["guaranteed"]

    def test_no_blocklist(self):
        assert ContentModerator.check_brand_safety("anything", _brand()) == []


class TestRequiredKeywords:
    def test_missing_keywords(self):
        missing = ContentModerator.check_required_keywords("All about OAuth", _brand(required=["oauth", "api"]))
        assert missing == ["api"]


class TestToxicity:
    @pytest.mark.asyncio
    async def test_flagged(self):
        moderator = ContentModerator(_openai_client(flagged=True, categories={"harassment": True, "violence": False}))
        result = await moderator.check_toxicity("text")
        assert result == {"flagged": True, "score": 0.0, "categories": {"harassment": True}}

    @pytest.mark.asyncio
    async def test_api_failure_fails_open(self):
        moderator = ContentModerator(_openai_client(error=RuntimeError("503")))
        result = await moderator.check_toxicity("text")
        assert result["flagged"] is False
        assert result["score"] == 1.0


class TestModerate:
    @pytest.mark.asyncio
    async def test_clean_content_passes(self):
        moderator = ContentModerator(_openai_client())
        result = await moderator.moderate("Rotate your API keys.", _brand())

        assert result.passed is True
        assert result.score == 1.0
        assert result.violations == []

    @pytest.mark.asyncio
    async def test_missing_required_keyword_is_soft(self):
        moderator = ContentModerator(_openai_client())
        result = await moderator.moderate("Rotate your keys.", _brand(required=["api"]))

        assert result.passed is True
        assert [v.type for v in result.violations] == ["missing_required"]
        assert result.score == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_pii_fails(self):
        moderator = ContentModerator(_openai_client())
        result = await moderator.moderate("Email me at jane@example.com", _brand())

        assert result.passed is False
        assert result.has_violation_type({"pii"})
        assert not result.has_violation_type({"toxicity", "brand_safety"})

    @pytest.mark.asyncio
    async def test_toxic_and_blocked(self):
        moderator = ContentModerator(_openai_client(flagged=True, categories={"hate": True}))
        result = await moderator.moderate("A guaranteed result", _brand(["guaranteed"]))

        types = {v.type for v in result.violations}
        assert types == {"toxicity", "brand_safety"}
        assert result.passed is False
        assert result.score == pytest.approx(0.5)
