import pytest

from goodnews.settings import Settings, load_config_file
from goodnews.utils.errors import ConfigError


def test_defaults_are_valid():
    settings = Settings.load(env={})
    assert settings.limits.daily_articles == 40
    assert settings.fetch.min_articles == 40
    assert settings.weights.views == 1 and settings.weights.saves == 2 and settings.weights.shares == 3
    assert not settings.has_ai


def test_environment_overrides_remote_overrides_defaults():
    remote = {"limits": {"daily_articles": 25, "bookmark_limit": 10}, "cache": {"trending_ttl": 1}}
    settings = Settings.load(remote=remote, env={"DAILY_ARTICLE_LIMIT": "12"})
    assert settings.limits.daily_articles == 12
    assert settings.limits.bookmark_limit == 10
    assert settings.cache.trending_ttl == 1.0


def test_remote_provider_settings_merge():
    settings = Settings.load(remote={"providers": {"gnews": {"enabled": False}}}, env={})
    assert [p.name for p in settings.enabled_providers()] == ["newsdata"]


def test_env_credentials_and_lists():
    settings = Settings.load(env={
        "NEWSDATA_API_KEY": "nd-key",
        "GEMINI_API_KEY": "g-key",
        "ADMIN_USER_IDS": "alice, bob,,",
        "NEWSDATA_CATEGORIES": "science,health",
    })
    assert settings.providers["newsdata"].api_key == "nd-key"
    assert settings.has_ai
    assert settings.security.admin_user_ids == ["alice", "bob"]
    assert settings.providers["newsdata"].categories == ["science", "health"]


def test_invalid_settings_report_every_problem():
    with pytest.raises(ConfigError) as excinfo:
        Settings.load(remote={"fetch": {"strategy": "random"}, "limits": {"daily_articles": 0}}, env={})
    errors = excinfo.value.details["errors"]
    assert any("fetch.strategy" in e for e in errors)
    assert any("limits.daily_articles" in e for e in errors)


def test_unparseable_env_value_is_a_config_error():
    with pytest.raises(ConfigError):
        Settings.load(env={"DAILY_ARTICLE_LIMIT": "forty"})


def test_validation_can_be_deferred():
    settings = Settings.load(remote={"fetch": {"strategy": "random"}}, env={}, validate=False)
    assert settings.fetch.strategy == "random"
    with pytest.raises(ConfigError):
        settings.validate()


def test_config_file_layer(tmp_path):
    path = tmp_path / "goodnews.yaml"
    path.write_text("fetch:\n  strategy: parallel\nweights:\n  shares: 5\n", encoding="utf-8")
    settings = Settings.load(env={"GOODNEWS_CONFIG_FILE": str(path)})
    assert settings.fetch.strategy == "parallel"
    assert settings.weights.shares == 5


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config_file(str(tmp_path / "absent.yaml"))
