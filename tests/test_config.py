"""
Tests for config loading, env resolution and model option merging.
"""

import pytest

from loombox import config
from loombox.config import (
    ConfigError,
    build_model_options,
    check_token_budget,
    default_model_alias,
    get_client_config,
    resolve_model_alias,
)

CFG = {
    "globals": {"default_model_alias": "fast", "max_tokens": 512},
    "models": {
        "smart": {"api_name": "claude-3-opus", "provider": "anthropic"},
        "fast": {"api_name": "gpt-4o-mini", "provider": "openai", "model_options": {"temperature": 0.7}},
    },
    "clients": {
        "oai": {"provider": "openai", "url": "http://x", "api_key": "k"},
        "claude": {"provider": "anthropic", "api_key": "k", "model_alias": "smart"},
        "local": {"provider": "openai", "url": "http://localhost", "model_options": {"model": "llama"}},
        "bare": {"provider": "nobody"},
    },
}


@pytest.fixture(autouse=True)
def fresh_cache(monkeypatch):
    monkeypatch.setattr(config, "_config", None)
    monkeypatch.setattr(config, "_config_path", None)


def test_load_resolves_env_vars(tmp_path, monkeypatch):
    """load_config resolves ${ENV_VAR} references and blanks missing ones."""
    monkeypatch.setenv("LOOMBOX_TEST_KEY", "secret")
    path = tmp_path / "config.yaml"
    path.write_text("clients:\n  a:\n    api_key: \"${LOOMBOX_TEST_KEY}\"\n    url: \"http://${LOOMBOX_MISSING}x\"\n")
    cfg = config.load_config(path)
    assert cfg["clients"]["a"]["api_key"] == "secret"
    assert cfg["clients"]["a"]["url"] == "http://x"
    assert config.get_config() is cfg


def test_missing_file(tmp_path):
    """A missing config file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        config.load_config(tmp_path / "nope.yaml")


def test_reload_rereads(tmp_path):
    """load_config caches, reload() reads the file again."""
    path = tmp_path / "config.yaml"
    path.write_text("session:\n  n: 1\n")
    assert config.load_config(path)["session"]["n"] == 1
    path.write_text("session:\n  n: 3\n")
    assert config.load_config(path)["session"]["n"] == 1
    assert config.reload()["session"]["n"] == 3


def test_resolve_alias():
    """Aliases map to api_name; unknown or empty aliases raise ConfigError."""
    assert resolve_model_alias("smart", CFG) == "claude-3-opus"
    with pytest.raises(ConfigError):
        resolve_model_alias("nope", CFG)
    with pytest.raises(ConfigError):
        resolve_model_alias("", CFG)


def test_default_alias():
    """Default alias prefers the provider, then globals, then the first preset."""
    assert default_model_alias("anthropic", CFG) == "smart"
    assert default_model_alias("google", CFG) == "fast"
    assert default_model_alias(None, {"models": {"a": {}}}) == "a"


def test_client_config():
    """Client blocks carry their name; unknown clients raise ConfigError."""
    assert get_client_config("oai", CFG)["name"] == "oai"
    with pytest.raises(ConfigError, match="Unknown client"):
        get_client_config("missing", CFG)


def test_model_options_from_client_alias():
    """The client model_alias resolves through the presets."""
    options = build_model_options(None, get_client_config("claude", CFG), CFG)
    assert options == {"max_tokens": 512, "model": "claude-3-opus", "modelAlias": "smart"}


def test_model_options_explicit_alias_and_preset_defaults():
    """An explicit alias wins and brings its preset options."""
    options = build_model_options("fast", get_client_config("claude", CFG), CFG)
    assert options["model"] == "gpt-4o-mini"
    assert options["temperature"] == 0.7


def test_model_options_provider_default():
    """Clients without an alias fall back to a preset of their provider."""
    options = build_model_options(None, get_client_config("oai", CFG), CFG)
    assert options["model"] == "gpt-4o-mini"


def test_model_options_client_model_wins():
    """A client naming its own model skips the presets."""
    options = build_model_options(None, get_client_config("local", CFG), CFG)
    assert options == {"max_tokens": 512, "model": "llama"}


def test_model_options_nothing_configured():
    """No alias and no model raises ConfigError."""
    with pytest.raises(ConfigError, match="No model configured"):
        build_model_options(None, {"name": "x"}, {"models": {}})


def test_model_options_context_length_from_globals():
    """A prompt allowance that overflows globals.context_length raises ConfigError."""
    cfg = {**CFG, "globals": {**CFG["globals"], "context_length": 4096, "max_prompt_tokens": 4000}}
    with pytest.raises(ConfigError, match=r"4000 \+ 512 = 4512"):
        build_model_options(None, get_client_config("claude", cfg), cfg)


def test_model_options_preset_context_length_wins():
    """A preset's context_length overrides the global one."""
    cfg = {
        "globals": {"max_tokens": 512, "context_length": 1000000},
        "models": {"small": {"api_name": "tiny", "context_length": 2048}},
    }
    client = {"name": "c", "model_alias": "small", "max_prompt_tokens": 1600}
    with pytest.raises(ConfigError, match="context_length \\(2048\\)"):
        build_model_options(None, client, cfg)
    client["max_prompt_tokens"] = 1536
    assert build_model_options(None, client, cfg)["model"] == "tiny"


def test_model_options_budget_keys_stay_out_of_options():
    """Budget settings are checked but never sent as model options."""
    cfg = {**CFG, "globals": {**CFG["globals"], "context_length": 8192}}
    options = build_model_options(None, get_client_config("local", cfg), cfg)
    assert options == {"max_tokens": 512, "model": "llama"}


def test_check_token_budget_defaults():
    """Without settings the allowance is the context minus max_tokens."""
    assert check_token_budget({"max_tokens": 1024}, context_length=8192) == 7168
    assert check_token_budget({}) == 8192 - 400
    with pytest.raises(ConfigError, match="no room"):
        check_token_budget({"max_tokens": 9000})
