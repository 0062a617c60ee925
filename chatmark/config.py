import json
from pathlib import Path
from typing import Any

import yaml

SETTINGS_JSON = "settings.json"
SETTINGS_YAML = "settings.yaml"


def load_config(config_dir: Path) -> dict[str, Any]:
    cfg_json = config_dir / SETTINGS_JSON
    cfg_yaml = config_dir / SETTINGS_YAML

    if cfg_json.exists():
        data = json.loads(cfg_json.read_text(encoding="utf-8"))
    elif cfg_yaml.exists():
        data = yaml.safe_load(cfg_yaml.read_text(encoding="utf-8"))
    else:
        return {}

    if not isinstance(data, dict):
        return {}
    return data


def save_config(config_dir: Path, values: dict[str, Any]) -> Path:
    """Merge ``values`` into settings.json, keeping unrelated keys."""
    config_dir.mkdir(parents=True, exist_ok=True)
    merged = load_config(config_dir)
    merged.update(values)
    path = config_dir / SETTINGS_JSON
    path.write_text(json.dumps(merged, indent=2, ensure_ascii=False), encoding="utf-8")
    return path
