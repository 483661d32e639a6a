"""
Good news classification.

Two interchangeable strategies reduce a raw batch to enriched items:

- ``KeywordClassifier``: title keyword heuristic, always available.
- ``AIClassifier``: one Gemini call for the whole batch with strict JSON
  output, each returned item validated independently.

``ContentClassifier`` picks the AI strategy when it is configured and falls
back to the heuristic on any AI failure or unparseable response. An AI
response that parses to an empty array is a legitimate "nothing qualifies".
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Pattern, Sequence

from goodnews.models.article import CATEGORIES, DEFAULT_CATEGORY, MIN_TITLE_LENGTH, EnrichedArticle, RawArticle
from goodnews.models.results import Outcome
from goodnews.services.ai_service import GEMINI_SERVICE, AIService
from goodnews.services.rate_limiter import RateLimiterRegistry
from goodnews.services.retry import RetryExecutor
from goodnews.utils.errors import ClassifierError, GoodNewsError
from goodnews.utils.logging_config import log_ai_interaction

logger = logging.getLogger(__name__)


# Dict order is the category precedence for the heuristic
POSITIVE_KEYWORDS: Dict[str, List[str]] = {
    "SCIENCE": ["discovery", "breakthrough", "research", "scientists", "study", "finding"],
    "TECHNOLOGY": ["innovation", "app", "software", "tech", "digital", "robot", "ai", "artificial intelligence"],
    "ENVIRONMENT": ["renewable", "clean energy", "conservation", "wildlife", "sustainable", "eco-friendly"],
    "HEALTH": ["medical", "treatment", "vaccine", "healthcare", "wellness", "recovery", "cure"],
    "COMMUNITY": ["volunteer", "donation", "charity", "community", "helping", "support"],
    "ANIMALS": ["rescue", "animal", "pet", "wildlife", "species", "protection"],
    "INNOVATION": ["invention", "new device", "creative", "solution", "patent"],
}

NEGATIVE_KEYWORDS = ["dead", "killed", "attack", "crime", "war", "protest", "disaster", "tragedy", "death"]

UNSAFE_PATTERNS = ["violence", "hate", "sexual", "abuse", "harassment", "extremism"]

POSITIVE_WORDS = [
    "breakthrough", "discovery", "help", "aid", "solution", "recovery", "hope", "save",
    "protect", "clean", "green", "positive", "good", "better", "improve", "success",
]

SHORT_KEYWORD_LENGTH = 3


def keyword_pattern(keyword: str) -> Pattern:
    """
    Word-start match. Short keywords ("ai", "app", "war") need the whole
    word (optionally plural) so "said" or "award" do not match.
    """
    escaped = re.escape(keyword.lower())
    if len(keyword) <= SHORT_KEYWORD_LENGTH:
        return re.compile(rf"\b{escaped}s?\b")
    return re.compile(rf"\b{escaped}")


def _compile(keywords: Sequence[str]) -> List[Pattern]:
    return [keyword_pattern(k) for k in keywords]


_NEGATIVE = _compile(NEGATIVE_KEYWORDS)
_UNSAFE = _compile(UNSAFE_PATTERNS)
_POSITIVE_BY_CATEGORY = {category: _compile(words) for category, words in POSITIVE_KEYWORDS.items()}


def _matches_any(text: str, patterns: List[Pattern]) -> bool:
    return any(p.search(text) for p in patterns)


def is_safe_content(text: Optional[str]) -> bool:
    """False when the text hits an unsafe pattern or a negative keyword."""
    lowered = (text or "").lower()
    return not (_matches_any(lowered, _UNSAFE) or _matches_any(lowered, _NEGATIVE))


def match_category(title: str) -> Optional[str]:
    lowered = (title or "").lower()
    for category, patterns in _POSITIVE_BY_CATEGORY.items():
        if _matches_any(lowered, patterns):
            return category
    return None


def positivity_score(title: str, summary: str = "") -> int:
    """Neutral 50, +5 per distinct positive word, clamped to 0-100."""
    text = f"{title} {summary}".lower()
    score = 50 + 5 * sum(1 for word in POSITIVE_WORDS if word in text)
    return max(0, min(100, score))


class KeywordClassifier:
    """Heuristic fallback. Output is capped to keep the no-AI path small."""

    def __init__(self, max_items: int = 5, require_positive_match: bool = True):
        self.max_items = max_items
        self.require_positive_match = require_positive_match

    def classify(self, articles: List[RawArticle]) -> List[EnrichedArticle]:
        results: List[EnrichedArticle] = []
        for article in articles:
            if len(results) >= self.max_items:
                break
            if not article.title or not article.link:
                continue
            if not is_safe_content(article.title):
                continue
            category = match_category(article.title)
            if category is None:
                if self.require_positive_match:
                    continue
                category = DEFAULT_CATEGORY
            results.append(EnrichedArticle.from_raw(
                article,
                category=category,
                summary=f"A positive story about {category.lower()}.",
                positivity_score=positivity_score(article.title),
            ))
        logger.info(f"✅ Keyword filter: {len(articles)} → {len(results)} articles")
        return results


class AIClassifier:
    """Batch classification through Gemini with per-item validation."""

    def __init__(
        self,
        ai_service: AIService,
        retry: RetryExecutor,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        max_attempts: int = 2,
        initial_delay_ms: float = 1000,
    ):
        self.ai_service = ai_service
        self.retry = retry
        self.rate_limiters = rate_limiters
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms
        self.logger = logging.getLogger(__name__)

    async def classify(self, articles: List[RawArticle]) -> List[EnrichedArticle]:
        """
        Raises ClassifierError/RateLimitError when the call fails and
        ClassifierError(kind="unparseable") when the reply is not a JSON array.
        """
        prompt_items = [article.to_prompt_item() for article in articles]

        async def call():
            if self.rate_limiters is not None:
                await self.rate_limiters.acquire(GEMINI_SERVICE)
            return await self.ai_service.classify_articles(prompt_items)

        response = await self.retry.run(
            call,
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            operation_name="gemini:classify",
        )
        items = parse_classification(response.content)

        by_link = {article.link: article for article in articles}
        enriched: List[EnrichedArticle] = []
        dropped = 0
        for item in items:
            article = self._validate_item(item, by_link)
            if article is None:
                dropped += 1
                continue
            enriched.append(article)

        log_ai_interaction(
            self.logger,
            response.prompt_key,
            response.model,
            len(articles),
            response.response_time_ms,
            True,
            accepted=len(enriched),
            dropped=dropped,
            tokens_used=response.tokens_used,
        )
        return enriched

    def _validate_item(self, item: Any, by_link: Dict[str, RawArticle]) -> Optional[EnrichedArticle]:
        if not isinstance(item, dict):
            return None
        unique_id = item.get("uniqueId")
        title = item.get("title")
        summary = item.get("summary")
        category = item.get("category")
        if not all(isinstance(v, str) and v.strip() for v in (unique_id, title, summary, category)):
            self.logger.debug(f"AI item missing fields: {str(item)[:120]}")
            return None
        if len(title) <= MIN_TITLE_LENGTH:
            return None
        category = category.strip().upper()
        if category not in CATEGORIES:
            self.logger.debug(f"AI item has invalid category {category!r}")
            return None
        if not is_safe_content(title) or not is_safe_content(summary):
            self.logger.info(f"AI item rejected by safety filter: {title[:60]!r}")
            return None
        source = by_link.get(unique_id)
        if source is None:
            self.logger.debug(f"AI item references unknown article {unique_id[:80]!r}")
            return None
        return EnrichedArticle.from_raw(
            source,
            category=category,
            summary=summary.strip(),
            title=title.strip(),
            positivity_score=positivity_score(title, summary),
        )


def parse_classification(text: Optional[str]) -> List[Any]:
    if not text or not text.strip():
        raise ClassifierError("Empty response from Gemini", kind="unparseable")
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", cleaned)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ClassifierError(f"Gemini response is not valid JSON: {e}", kind="unparseable") from e
    if not isinstance(parsed, list):
        raise ClassifierError("Gemini response is not a JSON array", kind="unparseable")
    return parsed


class ContentClassifier:
    """Strategy selector with a deterministic fallback chain."""

    def __init__(self, heuristic: KeywordClassifier, ai: Optional[AIClassifier] = None):
        self.heuristic = heuristic
        self.ai = ai
        self.logger = logging.getLogger(__name__)

    async def classify(self, articles: List[RawArticle]) -> Outcome:
        if not articles:
            return Outcome.ok([])

        if self.ai is None:
            self.logger.info("AI classifier not configured, using keyword filter")
            return Outcome.degraded(self.heuristic.classify(articles), "ai_unavailable")

        try:
            items = await self.ai.classify(articles)
        except ClassifierError as e:
            reason = "ai_unparseable" if e.kind == "unparseable" else f"ai_failed: {e.kind}"
            self.logger.warning(f"AI classification failed ({reason}), falling back to keyword filter: {e}")
            return Outcome.degraded(self.heuristic.classify(articles), reason)
        except GoodNewsError as e:
            self.logger.warning(f"AI classification failed ({e.code}), falling back to keyword filter: {e}")
            return Outcome.degraded(self.heuristic.classify(articles), f"ai_failed: {e.code}")
        except Exception as e:
            self.logger.error(f"Unexpected AI classification error, falling back to keyword filter: {e}", exc_info=True)
            return Outcome.degraded(self.heuristic.classify(articles), "ai_failed: unknown")

        self.logger.info(f"✅ AI classification: {len(articles)} → {len(items)} articles")
        return Outcome.ok(items)
