import pytest

from goodnews.main import APP_CONFIG, RUNTIME_DOC, GoodNewsApp, main
from goodnews.services.document_store import DocumentStore
from goodnews.settings import Settings
from goodnews.utils.errors import ConfigError


@pytest.fixture
def env(tmp_path):
    return {
        "GOODNEWS_DB_PATH": str(tmp_path / "app.db"),
        "NEWSDATA_API_KEY": "nd-key",
    }


async def write_runtime_config(db_path, remote):
    store = DocumentStore(db_path)
    await store.initialize()
    await store.set(APP_CONFIG, RUNTIME_DOC, remote)
    await store.close()


async def test_app_wires_components_and_closes(env):
    app = await GoodNewsApp(env=env).initialize()
    try:
        assert app.guard.running
        assert app.classifier.ai is None
        assert [p.name for p in app.orchestrator.providers] == ["newsdata", "gnews"]
        health = await app.api.call("healthCheck")
        assert health["status"] == "healthy"
    finally:
        await app.close()
    assert not app.guard.running


async def test_runtime_config_sits_between_defaults_and_environment(env):
    await write_runtime_config(env["GOODNEWS_DB_PATH"], {
        "limits": {"daily_articles": 25, "bookmark_limit": 12},
        "fetch": {"strategy": "parallel"},
    })
    env["DAILY_ARTICLE_LIMIT"] = "10"

    async with GoodNewsApp(env=env) as app:
        assert app.settings.limits.daily_articles == 10
        assert app.settings.limits.bookmark_limit == 12
        assert app.orchestrator.strategy == "parallel"
        assert app.scheduler.daily_limit == 10
        assert app.engagement.bookmark_limit == 12


async def test_invalid_runtime_config_fails_startup(env):
    await write_runtime_config(env["GOODNEWS_DB_PATH"], {"limits": {"daily_articles": -1}})
    app = GoodNewsApp(env=env)
    with pytest.raises(ConfigError):
        await app.initialize()
    await app.close()


async def test_explicit_settings_skip_runtime_config(env):
    await write_runtime_config(env["GOODNEWS_DB_PATH"], {"limits": {"daily_articles": 25}})
    settings = Settings.load(env=env)
    async with GoodNewsApp(settings=settings, env=env) as app:
        assert app.settings.limits.daily_articles == 40


async def test_cli_sweep(env, monkeypatch, capsys):
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setattr("goodnews.main.load_dotenv", lambda: None)

    assert await main(["--sweep"]) == 0
    assert '"articles": 0' in capsys.readouterr().out


async def test_cli_without_a_mode_prints_help(capsys):
    assert await main([]) == 2
    assert "--serve" in capsys.readouterr().out
