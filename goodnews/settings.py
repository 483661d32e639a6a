"""
Layered runtime configuration.

Settings are built once at startup with a fixed precedence:

    dataclass defaults  <  remote config  <  environment variables

"Remote" is any nested mapping mirroring the section layout below, read
from a YAML file (``GOODNEWS_CONFIG_FILE``) and/or the ``app_config/runtime``
document. The resulting object is validated eagerly and then passed by
reference to every component; nothing re-merges config per request.
"""

import os
import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

from goodnews.utils.errors import ConfigError


VERSION = "2.2.0"
DEFAULT_PROMPTS_PATH = str(Path(__file__).parent / "config" / "prompts.yaml")
FETCH_STRATEGIES = ("parallel", "priority")


@dataclass
class StoreSettings:
    db_path: str = "data/goodnews.db"
    batch_limit: int = 500
    cleanup_batch_limit: int = 500
    lookup_chunk_size: int = 10
    max_payload_bytes: int = 900 * 1024
    article_ttl_hours: int = 48
    metadata_ttl_days: int = 7
    max_articles_per_call: int = 100


@dataclass
class LimitSettings:
    daily_articles: int = 40
    bookmark_limit: int = 30
    trending_limit: int = 50
    trending_window_hours: int = 24
    initial_retry_delay_ms: int = 1000


@dataclass
class CacheSettings:
    """TTLs in minutes"""
    category_stats_ttl: float = 5
    trending_ttl: float = 2
    default_ttl: float = 5


@dataclass
class AISettings:
    api_key: Optional[str] = None
    model: str = "gemini-2.0-flash"
    temperature: float = 0.1
    max_output_tokens: int = 2000
    timeout_seconds: float = 30.0
    max_attempts: int = 2
    prompts_path: str = DEFAULT_PROMPTS_PATH


@dataclass
class RateLimitSettings:
    calls_per_minute: Dict[str, int] = field(
        default_factory=lambda: {"newsdata": 30, "gnews": 30, "gemini": 30}
    )
    window_seconds: float = 60.0
    skew_buffer_seconds: float = 5.0
    max_errors: int = 5


@dataclass
class SecuritySettings:
    max_request_kb: int = 10
    max_concurrent_requests: int = 5
    window_seconds: float = 30.0
    cleanup_interval_seconds: float = 30.0
    admin_user_ids: List[str] = field(default_factory=list)


@dataclass
class FetchSettings:
    strategy: str = "priority"
    min_articles: int = 40
    provider_timeout_seconds: float = 10.0
    max_attempts: int = 2
    initial_delay_ms: int = 2000
    breaker_failure_threshold: int = 3
    breaker_recovery_seconds: float = 300.0


@dataclass
class ProviderSettings:
    name: str
    base_url: str
    api_key: Optional[str] = None
    priority: int = 1
    enabled: bool = True
    # Empty list means: use the daily theme rotation
    categories: List[str] = field(default_factory=list)
    country: str = "us"
    language: str = "en"
    page_size: int = 10


@dataclass
class TrendingWeights:
    views: int = 1
    saves: int = 2
    shares: int = 3


@dataclass
class SchedulerSettings:
    interval_minutes: float = 360
    max_run_seconds: float = 300
    fallback_recent_count: int = 5
    fallback_publish_count: int = 3
    sweep_interval_minutes: float = 1440


@dataclass
class LoggingSettings:
    level: str = "INFO"
    log_dir: Optional[str] = None
    enable_file_logging: bool = False
    enable_structured_logging: bool = False


def _default_providers() -> Dict[str, ProviderSettings]:
    return {
        "newsdata": ProviderSettings(
            name="newsdata",
            base_url="https://newsdata.io/api/1/latest",
            priority=1,
        ),
        "gnews": ProviderSettings(
            name="gnews",
            base_url="https://gnews.io/api/v4/top-headlines",
            priority=2,
        ),
    }


@dataclass
class Settings:
    store: StoreSettings = field(default_factory=StoreSettings)
    limits: LimitSettings = field(default_factory=LimitSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    ai: AISettings = field(default_factory=AISettings)
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    fetch: FetchSettings = field(default_factory=FetchSettings)
    providers: Dict[str, ProviderSettings] = field(default_factory=_default_providers)
    weights: TrendingWeights = field(default_factory=TrendingWeights)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    instance_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    version: str = VERSION

    @classmethod
    def load(
        cls,
        remote: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
        config_file: Optional[str] = None,
        validate: bool = True,
    ) -> "Settings":
        """Build settings from defaults, then remote layers, then environment."""
        env = os.environ if env is None else env
        settings = cls()

        config_file = config_file or env.get("GOODNEWS_CONFIG_FILE")
        if config_file:
            settings.apply_remote(load_config_file(config_file))
        if remote:
            settings.apply_remote(remote)
        settings.apply_env(env)

        if validate:
            settings.validate()
        return settings

    def apply_remote(self, remote: Mapping[str, Any]) -> None:
        for section_name, values in remote.items():
            if section_name == "providers" and isinstance(values, Mapping):
                for provider_name, provider_values in values.items():
                    provider = self.providers.get(provider_name)
                    if provider is None or not isinstance(provider_values, Mapping):
                        continue
                    _merge_dataclass(provider, provider_values, f"providers.{provider_name}")
                continue
            if not hasattr(self, section_name):
                continue
            current = getattr(self, section_name)
            if is_dataclass(current) and isinstance(values, Mapping):
                _merge_dataclass(current, values, section_name)
            elif not is_dataclass(current) and not isinstance(values, Mapping):
                setattr(self, section_name, _coerce(current, values, section_name))

    def apply_env(self, env: Mapping[str, str]) -> None:
        for var, (path, caster) in ENV_OVERRIDES.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                value = caster(raw)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid value for {var}: {raw!r} ({e})") from e
            self._set_path(path, value)

    def _set_path(self, path: Tuple[str, ...], value: Any) -> None:
        target: Any = self
        for part in path[:-1]:
            target = target[part] if isinstance(target, dict) else getattr(target, part)
        if isinstance(target, dict):
            target[path[-1]] = value
        else:
            setattr(target, path[-1], value)

    def validate(self) -> None:
        """Raise ConfigError listing every invalid setting."""
        errors: List[str] = []

        def positive(name: str, value: float) -> None:
            if value is None or value <= 0:
                errors.append(f"{name} must be positive (got {value})")

        positive("store.batch_limit", self.store.batch_limit)
        if self.store.batch_limit > 500:
            errors.append("store.batch_limit cannot exceed 500 writes per batch")
        positive("store.cleanup_batch_limit", self.store.cleanup_batch_limit)
        positive("store.lookup_chunk_size", self.store.lookup_chunk_size)
        positive("store.max_payload_bytes", self.store.max_payload_bytes)
        positive("store.article_ttl_hours", self.store.article_ttl_hours)
        positive("store.metadata_ttl_days", self.store.metadata_ttl_days)
        positive("store.max_articles_per_call", self.store.max_articles_per_call)

        positive("limits.daily_articles", self.limits.daily_articles)
        positive("limits.bookmark_limit", self.limits.bookmark_limit)
        positive("limits.trending_limit", self.limits.trending_limit)
        if self.limits.initial_retry_delay_ms < 0:
            errors.append("limits.initial_retry_delay_ms cannot be negative")

        for name in ("category_stats_ttl", "trending_ttl", "default_ttl"):
            positive(f"cache.{name}", getattr(self.cache, name))

        positive("ai.timeout_seconds", self.ai.timeout_seconds)
        positive("ai.max_output_tokens", self.ai.max_output_tokens)
        positive("ai.max_attempts", self.ai.max_attempts)
        if not 0.0 <= self.ai.temperature <= 2.0:
            errors.append(f"ai.temperature must be within [0, 2] (got {self.ai.temperature})")

        for service, limit in self.rate_limits.calls_per_minute.items():
            positive(f"rate_limits.calls_per_minute.{service}", limit)
        positive("rate_limits.window_seconds", self.rate_limits.window_seconds)
        positive("rate_limits.max_errors", self.rate_limits.max_errors)

        positive("security.max_request_kb", self.security.max_request_kb)
        positive("security.max_concurrent_requests", self.security.max_concurrent_requests)
        positive("security.window_seconds", self.security.window_seconds)
        positive("security.cleanup_interval_seconds", self.security.cleanup_interval_seconds)

        if self.fetch.strategy not in FETCH_STRATEGIES:
            errors.append(f"fetch.strategy must be one of {FETCH_STRATEGIES} (got {self.fetch.strategy!r})")
        positive("fetch.min_articles", self.fetch.min_articles)
        positive("fetch.provider_timeout_seconds", self.fetch.provider_timeout_seconds)
        positive("fetch.max_attempts", self.fetch.max_attempts)
        positive("fetch.breaker_failure_threshold", self.fetch.breaker_failure_threshold)

        for name, provider in self.providers.items():
            if not provider.base_url:
                errors.append(f"providers.{name}.base_url is required")
            if not 1 <= provider.page_size <= 10:
                errors.append(f"providers.{name}.page_size must be within [1, 10]")

        for name in ("views", "saves", "shares"):
            if getattr(self.weights, name) < 0:
                errors.append(f"weights.{name} cannot be negative")

        positive("scheduler.interval_minutes", self.scheduler.interval_minutes)
        positive("scheduler.max_run_seconds", self.scheduler.max_run_seconds)

        if errors:
            raise ConfigError("Invalid configuration: " + "; ".join(errors), {"errors": errors})

    @property
    def has_ai(self) -> bool:
        return bool(self.ai.api_key)

    def enabled_providers(self) -> List[ProviderSettings]:
        return [p for p in self.providers.values() if p.enabled]


def load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found at {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML at {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _merge_dataclass(target: Any, values: Mapping[str, Any], prefix: str) -> None:
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            continue
        current = getattr(target, key)
        setattr(target, key, _coerce(current, value, f"{prefix}.{key}"))


def _coerce(current: Any, value: Any, name: str) -> Any:
    """Coerce a remote value to the type of the existing default."""
    if value is None:
        return current
    try:
        if isinstance(current, bool):
            return _parse_bool(value) if isinstance(value, str) else bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, dict):
            merged = dict(current)
            merged.update(value)
            return merged
        if isinstance(current, list):
            return _parse_list(value) if isinstance(value, str) else list(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    return value


def _parse_bool(raw: str) -> bool:
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _parse_list(raw: str) -> List[str]:
    return [item.strip() for item in str(raw).split(",") if item.strip()]


ENV_OVERRIDES: Dict[str, Tuple[Tuple[str, ...], Callable[[str], Any]]] = {
    "NEWSDATA_API_KEY": (("providers", "newsdata", "api_key"), str),
    "NEWSDATA_BASE_URL": (("providers", "newsdata", "base_url"), str),
    "NEWSDATA_CATEGORIES": (("providers", "newsdata", "categories"), _parse_list),
    "GNEWS_API_KEY": (("providers", "gnews", "api_key"), str),
    "GNEWS_ENABLED": (("providers", "gnews", "enabled"), _parse_bool),
    "GEMINI_API_KEY": (("ai", "api_key"), str),
    "GEMINI_MODEL": (("ai", "model"), str),
    "NEWSDATA_RATE_LIMIT": (("rate_limits", "calls_per_minute", "newsdata"), int),
    "GNEWS_RATE_LIMIT": (("rate_limits", "calls_per_minute", "gnews"), int),
    "GEMINI_RATE_LIMIT": (("rate_limits", "calls_per_minute", "gemini"), int),
    "DAILY_ARTICLE_LIMIT": (("limits", "daily_articles"), int),
    "CACHE_TTL_MINUTES": (("cache", "default_ttl"), float),
    "FETCH_STRATEGY": (("fetch", "strategy"), str),
    "FETCH_MIN_ARTICLES": (("fetch", "min_articles"), int),
    "GOODNEWS_DB_PATH": (("store", "db_path"), str),
    "ADMIN_USER_IDS": (("security", "admin_user_ids"), _parse_list),
    "LOG_LEVEL": (("logging", "level"), str),
    "LOG_DIR": (("logging", "log_dir"), str),
    "INSTANCE_ID": (("instance_id",), str),
}
