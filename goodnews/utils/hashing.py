import hashlib
import re

from goodnews.utils.errors import ValidationError


ARTICLE_ID_LENGTH = 32
ARTICLE_ID_PATTERN = re.compile(r"[a-f0-9]{32}")


def derive_article_id(url: str) -> str:
    """
    Content-addressed article id: first 32 hex chars of SHA-256(url).

    The raw link is hashed as-is (no normalization) so ids stay identical
    to the ones already persisted by other writers.
    """
    if not isinstance(url, str) or not url:
        raise ValidationError("Valid URL is required for ID generation", field="url")
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:ARTICLE_ID_LENGTH]


def is_valid_article_id(value) -> bool:
    return isinstance(value, str) and bool(ARTICLE_ID_PATTERN.fullmatch(value))


def require_article_id(value) -> str:
    if not is_valid_article_id(value):
        raise ValidationError("Invalid article ID format", field="articleId")
    return value


def normalize_link(url: str) -> str:
    """Comparison key for dedup only. Never used for id derivation."""
    return (url or "").strip().lower()
