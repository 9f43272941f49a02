"""
Config loader for loombox.
Reads config.yaml once and caches it. All other modules import from here.

reload() drops the cache so the next get_config() re-reads the file; an
external file watcher calls it, the core never watches files itself.
"""

import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(os.environ.get("LOOMBOX_CONFIG", Path(__file__).parent.parent / "config.yaml"))

_config: dict | None = None
_config_path: Path | None = None

DEFAULT_CONTEXT_LENGTH = 8192
DEFAULT_MAX_RESPONSE_TOKENS = 400


class ConfigError(Exception):
    """Missing or invalid configuration. Raised before any network call."""


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | str | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config, _config_path
    if _config is not None and (path is None or Path(path) == _config_path):
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    _config_path = config_path
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reload(path: Path | str | None = None) -> dict:
    """Drop the cached config and read it again."""
    global _config
    previous = _config_path
    _config = None
    cfg = load_config(path or previous)
    logger.info("Config reloaded from %s", _config_path)
    return cfg


# ---------------------------------------------------------------------------
# Model presets
# ---------------------------------------------------------------------------

def get_model_presets(cfg: dict | None = None) -> tuple[dict, dict]:
    """Return (globals, models) from the config's preset sections."""
    cfg = cfg if cfg is not None else get_config()
    globals_ = cfg.get("globals") or {}
    models = cfg.get("models") or {}
    if not isinstance(globals_, dict):
        globals_ = {}
    if not isinstance(models, dict):
        models = {}
    return globals_, models


def resolve_model_alias(alias: str, cfg: dict | None = None) -> str:
    """Map a model alias to the provider's model name."""
    if not alias:
        raise ConfigError("No model alias given")
    _, models = get_model_presets(cfg)
    preset = models.get(alias)
    if not preset or not preset.get("api_name"):
        raise ConfigError(f"Unknown model alias: {alias}")
    return preset["api_name"]


def default_model_alias(provider: str | None = None, cfg: dict | None = None) -> str | None:
    """
    Pick a default alias: first preset for the provider, then
    globals.default_model_alias, then the first preset of all.
    """
    globals_, models = get_model_presets(cfg)
    if provider:
        for alias, preset in models.items():
            if (preset or {}).get("provider") == provider:
                return alias
    default = globals_.get("default_model_alias")
    if default and default in models:
        return default
    return next(iter(models), None)


def get_client_config(name: str, cfg: dict | None = None) -> dict:
    """Return the `clients.<name>` block, with the name filled in."""
    cfg = cfg if cfg is not None else get_config()
    clients = cfg.get("clients") or {}
    client_cfg = clients.get(name)
    if not isinstance(client_cfg, dict):
        available = ", ".join(clients) or "none"
        raise ConfigError(f"Unknown client '{name}'. Available: {available}")
    return {"name": name, **client_cfg}


def build_model_options(alias: str | None, client_cfg: dict, cfg: dict | None = None) -> dict:
    """
    Merge globals, the alias preset's defaults and the client's
    model_options into one options dict with `model` resolved.
    Raises ConfigError when the token budget cannot fit the context window.
    """
    globals_, models = get_model_presets(cfg)
    client_options = client_cfg.get("model_options") or {}
    alias = alias or client_cfg.get("model_alias")
    # A client that names its own model only falls back to presets when asked
    if not alias and not client_options.get("model"):
        alias = default_model_alias(client_cfg.get("provider"), cfg)
    options: dict = {}
    if globals_.get("max_tokens"):
        options["max_tokens"] = globals_["max_tokens"]
    preset: dict = {}
    if alias:
        preset = models.get(alias) or {}
        options.update(preset.get("model_options") or {})
        options.update(client_options)
        options["model"] = resolve_model_alias(alias, cfg)
        options["modelAlias"] = alias
    else:
        options.update(client_options)
        if not options.get("model"):
            raise ConfigError(f"No model configured for client '{client_cfg.get('name', '?')}'")
    check_token_budget(
        options,
        context_length=preset.get("context_length") or globals_.get("context_length"),
        max_prompt_tokens=client_cfg.get("max_prompt_tokens") or globals_.get("max_prompt_tokens"),
    )
    return options


def check_token_budget(options: dict, context_length=None, max_prompt_tokens=None) -> int:
    """Return the prompt token allowance, or raise ConfigError if it overflows the context."""
    context_length = int(context_length or DEFAULT_CONTEXT_LENGTH)
    max_tokens = int(options.get("max_tokens") or DEFAULT_MAX_RESPONSE_TOKENS)
    if max_prompt_tokens is None:
        max_prompt_tokens = context_length - max_tokens
        if max_prompt_tokens <= 0:
            raise ConfigError(
                f"max_tokens ({max_tokens}) leaves no room for a prompt in "
                f"context_length ({context_length})"
            )
    max_prompt_tokens = int(max_prompt_tokens)
    total = max_prompt_tokens + max_tokens
    if total > context_length:
        raise ConfigError(
            f"max_prompt_tokens + max_tokens ({max_prompt_tokens} + {max_tokens} = {total}) "
            f"must be less than or equal to context_length ({context_length})"
        )
    return max_prompt_tokens


def setup_logging(cfg: dict | None = None):
    cfg = cfg if cfg is not None else get_config()
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
