import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask

from chatmark.config import load_config
from chatmark.services.chat_store import ChatStore
from chatmark.services.context import DEFAULT_MAX_CHARS, ContextCache
from chatmark.services.llm import CancelRegistry

PREFERENCE_KEYS = {
    "OPENAI_API_KEY",
    "OPENAI_API_BASE",
    "CHATMARK_MODEL",
    "CHATMARK_SYSTEM_PROMPT",
    "CHATMARK_TEMPERATURE",
    "CHATMARK_MAX_TOKENS",
    "CHATMARK_MAX_CONTEXT_CHARS",
}

NUMERIC_PREFERENCES = {
    "CHATMARK_TEMPERATURE": float,
    "CHATMARK_MAX_TOKENS": int,
    "CHATMARK_MAX_CONTEXT_CHARS": int,
}

_LOG_DEFAULTS = {
    "LOG_LEVEL": "INFO",
    "LOG_FORMAT": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    "LOG_TYPE": "file",
    "LOG_FILE": "app.log",
}

logger = logging.getLogger(__name__)


def _configure_logging(log_dir: Path, options: dict[str, str]) -> None:
    """Configure logging based on resolved options."""

    level_name = (options.get("LOG_LEVEL") or _LOG_DEFAULTS["LOG_LEVEL"]).upper()
    level = getattr(logging, level_name, logging.INFO)

    log_format = options.get("LOG_FORMAT") or _LOG_DEFAULTS["LOG_FORMAT"]
    log_type = (options.get("LOG_TYPE") or _LOG_DEFAULTS["LOG_TYPE"]).lower()
    log_file_name = options.get("LOG_FILE") or _LOG_DEFAULTS["LOG_FILE"]

    handlers: list[logging.Handler] = []
    if log_type == "stream":
        handlers.append(logging.StreamHandler())
    elif log_type == "both":
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.StreamHandler())
        handlers.append(
            logging.FileHandler(_resolve_log_path(log_dir, log_file_name), encoding="utf-8")
        )
    else:  # default to file logging
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.FileHandler(_resolve_log_path(log_dir, log_file_name), encoding="utf-8")
        )

    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=handlers,
        force=True,
    )


def _resolve_log_path(log_dir: Path, file_name: str) -> Path:
    path = Path(file_name)
    if not path.is_absolute():
        return log_dir / path
    return path


def create_app(app_root: Path, dirs: dict, overrides: dict[str, Any] | None = None) -> Flask:
    raw_config = load_config(dirs["config"])
    config_values: dict[str, Any] = dict(raw_config)
    if overrides:
        config_values.update(overrides)

    log_options = _resolve_logging_options(config_values)
    _configure_logging(dirs["logs"], log_options)

    app = Flask(__name__)

    app.config["APP_ROOT"] = app_root
    app.config["DIRS"] = dirs
    app.config["RAW_CONFIG"] = raw_config
    app.config["CONFIG_OVERRIDES"] = dict(overrides or {})
    app.config.update(
        {k: v for k, v in config_values.items() if k not in PREFERENCE_KEYS}
    )
    app.config["PREFERENCES"] = resolve_preferences(config_values)

    max_chars = _to_int(
        app.config["PREFERENCES"].get("CHATMARK_MAX_CONTEXT_CHARS"), DEFAULT_MAX_CHARS
    )
    app.extensions["chat_store"] = ChatStore(dirs["data"])
    app.extensions["context_cache"] = ContextCache(max_chars=max_chars)
    app.extensions["cancel_registry"] = CancelRegistry()

    from chatmark.routes import bp as base_routes

    app.register_blueprint(base_routes)

    logger.info("chatmark app created at %s", app_root)
    return app


def resolve_preferences(config_values: dict[str, Any]) -> dict[str, str]:
    """Environment wins over the config file for every preference key."""
    preferences: dict[str, str] = {}
    for key in sorted(PREFERENCE_KEYS):
        env_value = os.getenv(key)
        cleaned_env = _stringify(env_value) if env_value is not None else ""
        if cleaned_env:
            preferences[key] = cleaned_env
            continue
        cleaned_config = _stringify(config_values.get(key))
        if cleaned_config:
            preferences[key] = cleaned_config
    return preferences


def env_snapshot() -> dict[str, str]:
    keys = set(PREFERENCE_KEYS) | set(_LOG_DEFAULTS) | {"CHATMARK_ROOT"}
    return {
        key: value
        for key in sorted(keys)
        if (value := os.environ.get(key))
    }


def _resolve_logging_options(config_values: dict[str, Any]) -> dict[str, str]:
    options: dict[str, str] = {}
    for key, default in _LOG_DEFAULTS.items():
        env_value = os.getenv(key)
        cleaned_env = _stringify(env_value) if env_value is not None else ""
        if cleaned_env:
            options[key] = cleaned_env
            continue
        cleaned_config = _stringify(config_values.get(key))
        options[key] = cleaned_config or default
    return options


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(item) for item in value if _stringify(item))
    text = str(value).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        text = text[1:-1].strip()
    return text
