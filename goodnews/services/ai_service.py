import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import yaml
from google import genai
from google.genai import types

from goodnews.models.article import CATEGORIES
from goodnews.settings import DEFAULT_PROMPTS_PATH
from goodnews.utils.errors import ClassifierError, ConfigError, GoodNewsError, RateLimitError


GEMINI_SERVICE = "gemini"
QUOTA_RETRY_AFTER = 300

# Ordered: the first matching marker decides the error kind
ERROR_MARKERS: List[Tuple[Tuple[str, ...], str]] = [
    (("PERMISSION_DENIED", "API key"), "auth"),
    (("RESOURCE_EXHAUSTED", "quota"), "quota"),
    (("INVALID_ARGUMENT",), "invalid"),
    (("UNAUTHENTICATED",), "auth"),
    (("DEADLINE_EXCEEDED", "timeout", "timed out"), "timeout"),
    (("INTERNAL",), "internal"),
    (("UNAVAILABLE",), "unavailable"),
]

SAFETY_CATEGORIES = (
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
)

CLASSIFICATION_SCHEMA = types.Schema(
    type=types.Type.ARRAY,
    items=types.Schema(
        type=types.Type.OBJECT,
        properties={
            "uniqueId": types.Schema(type=types.Type.STRING),
            "title": types.Schema(type=types.Type.STRING),
            "summary": types.Schema(type=types.Type.STRING),
            "category": types.Schema(type=types.Type.STRING, enum=list(CATEGORIES)),
        },
        required=["uniqueId", "title", "summary", "category"],
    ),
)


@dataclass
class AIResponse:
    content: Optional[str]
    prompt_key: str
    model: str
    tokens_used: int
    response_time_ms: float
    temperature: float
    success: bool = True
    error_message: Optional[str] = None


def map_gemini_error(error: BaseException) -> GoodNewsError:
    """Translate an SDK/transport failure into a typed error by message markers."""
    if isinstance(error, GoodNewsError):
        return error
    message = str(error) or type(error).__name__
    if isinstance(error, asyncio.TimeoutError):
        return ClassifierError(f"Gemini request timed out: {message}", kind="timeout")
    for markers, kind in ERROR_MARKERS:
        if any(marker in message for marker in markers):
            if kind == "quota":
                return RateLimitError(GEMINI_SERVICE, retry_after=QUOTA_RETRY_AFTER, message=f"Gemini quota exhausted: {message[:200]}")
            return ClassifierError(f"Gemini {kind} error: {message[:200]}", kind=kind)
    return ClassifierError(f"Failed to call Gemini API: {message[:200]}", kind="unknown")


class AIService:
    """
    Thin Gemini wrapper used by the classifier.
    References: Google GenAI Python SDK documentation.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        prompts_path: Optional[str] = None,
        temperature: float = 0.1,
        max_output_tokens: int = 2000,
        timeout_seconds: float = 30.0,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self.api_key and client is None:
            raise ConfigError("Gemini API key required. Set GEMINI_API_KEY or pass api_key parameter.")

        self.client = client or genai.Client(api_key=self.api_key)

        self.prompts_path = prompts_path or DEFAULT_PROMPTS_PATH
        self.prompts = self._load_prompts()

        params = self.prompts.get("parameters", {}) if isinstance(self.prompts, dict) else {}
        model_cfg = params.get("gemini", {}) if isinstance(params, dict) else {}
        self.model = model or os.getenv("GEMINI_MODEL") or model_cfg.get("model", "gemini-2.0-flash")
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_seconds = timeout_seconds
        self.call_count = 0

        self.logger = logging.getLogger(__name__)

    def _load_prompts(self) -> Dict[str, Any]:
        """Load prompts from YAML configuration file."""
        try:
            with open(self.prompts_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"Prompts file not found at {self.prompts_path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing YAML at {self.prompts_path}: {e}") from e

    def _format_prompt(self, prompt_key: str, context: Dict[str, Any]) -> Tuple[str, str]:
        """Build (system_instruction, user_text) from a prompt template."""
        cfg = self.prompts.get(prompt_key)
        if not cfg:
            raise ConfigError(f"Prompt '{prompt_key}' missing from {self.prompts_path}")
        master_persona = self.prompts.get("master_persona", "")
        system_text = (master_persona + "\n" + (cfg.get("system") or "")).strip()
        try:
            user_text = cfg.get("template", "").format(**context)
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigError(f"Prompt '{prompt_key}' could not be formatted: {e}") from e
        return system_text, user_text

    def _build_config(self, system_instruction: str, response_schema: Optional[types.Schema]) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=system_instruction or None,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            response_mime_type="application/json",
            response_schema=response_schema,
            safety_settings=[
                types.SafetySetting(
                    category=category,
                    threshold=types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
                )
                for category in SAFETY_CATEGORIES
            ],
        )

    async def generate_json(
        self,
        prompt_key: str,
        context: Dict[str, Any],
        response_schema: Optional[types.Schema] = None,
    ) -> AIResponse:
        """
        One JSON-mode generation call. Raises typed errors (ClassifierError,
        RateLimitError) so callers can decide on retry and fallback.
        """
        system_text, user_text = self._format_prompt(prompt_key, context)
        config = self._build_config(system_text, response_schema)
        start = time.monotonic()
        self.call_count += 1

        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=self.model,
                    contents=user_text,
                    config=config,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            self.logger.error(f"Gemini API call timed out after {self.timeout_seconds:.0f} seconds")
            raise ClassifierError(f"Gemini API call timed out after {self.timeout_seconds:.0f} seconds", kind="timeout") from e
        except Exception as e:
            mapped = map_gemini_error(e)
            self.logger.error(f"Gemini call failed ({type(mapped).__name__}): {mapped}")
            raise mapped from e

        try:
            text = response.text
        except ValueError:
            # Blocked or non-text candidates
            text = None

        usage = getattr(response, "usage_metadata", None)
        tokens = getattr(usage, "total_token_count", 0) or 0 if usage else 0
        return AIResponse(
            content=text,
            prompt_key=prompt_key,
            model=self.model,
            tokens_used=tokens,
            response_time_ms=(time.monotonic() - start) * 1000,
            temperature=self.temperature,
        )

    async def classify_articles(self, articles: List[Dict[str, Any]]) -> AIResponse:
        context = {
            "categories": ", ".join(CATEGORIES),
            "articles_json": json.dumps(articles, ensure_ascii=False),
        }
        return await self.generate_json("good_news_classification", context, CLASSIFICATION_SCHEMA)

    async def test_connection(self) -> bool:
        """Ping the API to validate connectivity and key."""
        try:
            self.logger.info("🔍 Testing AI service connection...")
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=self.model,
                    contents="ping",
                    config=types.GenerateContentConfig(max_output_tokens=10),
                ),
                timeout=self.timeout_seconds,
            )
            ok = bool(getattr(response, "text", None))
            self.logger.info(f"✅ AI service reachable (model {self.model})" if ok else "⚠️ AI service returned no text")
            return ok
        except Exception as e:
            self.logger.error(f"❌ AI service test connection failed: {e}")
            self.logger.error(f"   Model: {self.model}")
            return False
