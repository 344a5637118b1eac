"""
Pipeline schemas - structured output from each collaborator.
AI responses are validated here before anything is persisted.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field


class TrendCandidate(BaseModel):
    """One candidate topic as returned by a trend source."""
    title: str
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    source_urls: list[str] = Field(default_factory=list)
    published_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)  # source name, raw signal


class OutlineSection(BaseModel):
    """One section stub of a draft outline."""
    heading: str
    points: list[str] = Field(default_factory=list)
    word_target: Optional[int] = None


class GeneratedDraft(BaseModel):
    """Full article produced from an outline."""
    title: str
    body: str
    seo_metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="meta_description, keywords, slug, og_title, og_description",
    )


class GeneratedVariant(BaseModel):
    """Platform-specific rendering of a draft body."""
    title: Optional[str] = None
    content: str
    formatting: dict[str, Any] = Field(default_factory=dict, description="hashtags, mentions")
    metadata: dict[str, Any] = Field(default_factory=dict, description="link, excerpt")


class Violation(BaseModel):
    type: str
    message: str
    details: Any = None


class ModerationResult(BaseModel):
    """Moderation verdict. Policy failures are data, never exceptions."""
    passed: bool
    score: float = Field(default=1.0, ge=0.0, le=1.0)
    violations: list[Violation] = Field(default_factory=list)

    def has_violation_type(self, types) -> bool:
        return any(v.type in types for v in self.violations)


class PublishResult(BaseModel):
    """What a publisher returns after a successful post."""
    post_id: Optional[str] = None
    url: Optional[str] = None
    platform: str
    raw: dict[str, Any] = Field(default_factory=dict)
