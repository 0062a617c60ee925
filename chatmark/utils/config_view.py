from __future__ import annotations

import json
from typing import Any, Mapping, Set

from chatmark.utils.markdown import render_markdown

SECRET_KEYS = {"OPENAI_API_KEY"}


def build_config_html(
    config_values: Mapping[str, Any] | None,
    env_values: Mapping[str, str] | None,
    derived_env_keys: Set[str] | None = None,
) -> str:
    table_markdown = build_config_table(
        config_values or {},
        env_values or {},
        derived_env_keys or set(),
    )
    return render_markdown(table_markdown)


def build_config_table(
    config_values: Mapping[str, Any],
    env_values: Mapping[str, str],
    derived_env_keys: Set[str],
) -> str:
    keys = sorted(set(config_values.keys()) | set(env_values.keys()))
    if not keys:
        return "No configuration values detected."

    lines = ["| Parameter | Value | Source |", "| --- | --- | --- |"]

    for key in keys:
        env_present = key in env_values and key not in derived_env_keys
        cfg_present = key in config_values

        if env_present:
            value = env_values[key]
            source = "Environment"
            if cfg_present:
                source = "Environment (overrides config file)"
        elif cfg_present:
            value = _stringify(config_values[key])
            source = "Config file"
        else:
            continue

        if key in SECRET_KEYS:
            value = mask_secret(value)

        lines.append(f"| `{key}` | {_code_cell(value)} | {_escape_cell(source)} |")

    return "\n".join(lines)


def mask_secret(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:3]}...{value[-4:]}"


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, (str, int, float, bool)):
        return str(value)
    try:
        return json.dumps(value, ensure_ascii=False)
    except TypeError:
        return str(value)


def _code_cell(text: str) -> str:
    flat = " ".join(text.split()).replace("`", "'")
    if not flat:
        return ""
    return f"`{flat}`"


def _escape_cell(text: str) -> str:
    return " ".join(text.split()).replace("|", "\\|")
