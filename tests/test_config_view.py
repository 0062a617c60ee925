"""Tests for chatmark.utils.config_view."""

from __future__ import annotations

from chatmark.utils.config_view import build_config_html, build_config_table, mask_secret


def test_empty_table_message():
    assert build_config_table({}, {}, set()) == "No configuration values detected."


def test_sources_and_masking():
    table = build_config_table(
        {"CHATMARK_MODEL": "file-model", "LOG_LEVEL": "DEBUG"},
        {"CHATMARK_MODEL": "env-model", "OPENAI_API_KEY": "sk-abcdefghijkl"},
        set(),
    )
    lines = table.splitlines()
    assert lines[0] == "| Parameter | Value | Source |"
    assert "| `CHATMARK_MODEL` | `env-model` | Environment (overrides config file) |" in lines
    assert "| `LOG_LEVEL` | `DEBUG` | Config file |" in lines
    assert "| `OPENAI_API_KEY` | `sk-...ijkl` | Environment |" in lines


def test_derived_env_keys_fall_back_to_config():
    table = build_config_table({"LOG_LEVEL": "INFO"}, {"LOG_LEVEL": "INFO"}, {"LOG_LEVEL"})
    assert "| `LOG_LEVEL` | `INFO` | Config file |" in table


def test_html_table_keeps_pipes_inside_values():
    html = build_config_html({"LOG_FORMAT": "%(name)s | %(message)s"}, {})
    assert "<td><code>%(name)s | %(message)s</code></td>" in html
    assert html.count("<td>") == 3


def test_mask_secret():
    assert mask_secret("") == ""
    assert mask_secret("short") == "*****"
    assert mask_secret("sk-1234567890") == "sk-...7890"
