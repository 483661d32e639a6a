"""
Article models for the good news pipeline.

Raw and enriched articles are transient dataclasses. Stored articles live
in the document store as plain dicts (see ``ArticleStore``), so only the
field names and defaults are declared here.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


CATEGORIES = (
    "SCIENCE",
    "TECHNOLOGY",
    "ENVIRONMENT",
    "HEALTH",
    "COMMUNITY",
    "ANIMALS",
    "INNOVATION",
)
DEFAULT_CATEGORY = "COMMUNITY"

VALID_PLATFORMS = ("twitter", "facebook", "email", "copy", "whatsapp", "reddit", "other")

ORDER_BY_FIELDS = ("publishedAt", "trendingScore", "views", "saves", "shares")

# Preserved from the existing document when an article is re-ingested
ENGAGEMENT_FIELDS = (
    "views",
    "saves",
    "shares",
    "sharesByPlatform",
    "trendingScore",
    "lastViewedAt",
    "lastSharedAt",
)

MIN_TITLE_LENGTH = 10


@dataclass
class RawArticle:
    """Provider output, normalized across providers."""

    title: str
    link: str
    source_name: str = "Unknown"
    description: str = ""
    published_at: Optional[datetime] = None
    provider_tag: str = ""

    def is_valid(self) -> bool:
        return bool(self.link) and isinstance(self.title, str) and len(self.title) > MIN_TITLE_LENGTH

    def to_prompt_item(self) -> Dict[str, Any]:
        return {
            "uniqueId": self.link,
            "title": self.title,
            "pubDate": self.published_at.isoformat() if self.published_at else None,
        }


@dataclass
class EnrichedArticle:
    """A raw article that passed classification."""

    title: str
    link: str
    summary: str
    category: str
    source_name: str = "Unknown"
    description: str = ""
    published_at: Optional[datetime] = None
    positivity_score: Optional[int] = None

    @classmethod
    def from_raw(
        cls,
        raw: RawArticle,
        category: str,
        summary: str,
        title: Optional[str] = None,
        positivity_score: Optional[int] = None,
    ) -> "EnrichedArticle":
        return cls(
            title=title or raw.title,
            link=raw.link,
            summary=summary,
            category=category,
            source_name=raw.source_name,
            description=raw.description,
            published_at=raw.published_at,
            positivity_score=positivity_score,
        )

    def missing_fields(self) -> List[str]:
        """Storage-required fields that are empty"""
        required = {
            "title": self.title,
            "link": self.link,
            "summary": self.summary,
            "category": self.category,
        }
        return [name for name, value in required.items() if not value]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["published_at"] = self.published_at.isoformat() if self.published_at else None
        return data


@dataclass
class BatchMetadata:
    batch_id: str
    article_count: int
    processed_at: float
    expires_at: float
    instance_id: str

    def to_document(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "articleCount": self.article_count,
            "processedAt": self.processed_at,
            "expiresAt": self.expires_at,
            "instanceId": self.instance_id,
        }


@dataclass
class BatchResult:
    """Outcome of one ArticleStore.upsert_batch commit"""

    batch_id: str
    stored_count: int
    new_count: int
    updated_count: int
    by_category: Dict[str, int] = field(default_factory=dict)


def empty_platform_counts() -> Dict[str, int]:
    return {platform: 0 for platform in VALID_PLATFORMS}


def normalize_platform(platform: Optional[str]) -> str:
    value = (platform or "").strip().lower()
    return value if value in VALID_PLATFORMS else "other"
