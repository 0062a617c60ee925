import os
from pathlib import Path


def get_app_root(cli_root: str | None = None) -> Path:
    # Priority 1: --root CLI argument
    if cli_root:
        return Path(cli_root).expanduser().resolve()

    # Priority 2: CHATMARK_ROOT environment
    env_root = os.environ.get("CHATMARK_ROOT")
    if env_root:
        return Path(env_root).expanduser().resolve()

    # Priority 3: working directory
    return Path.cwd().resolve()


def ensure_app_dirs(root: Path) -> dict[str, Path]:
    root.mkdir(parents=True, exist_ok=True)
    (root / "logs").mkdir(exist_ok=True)
    (root / "data").mkdir(exist_ok=True)
    (root / "config").mkdir(exist_ok=True)
    return {
        "root": root,
        "logs": root / "logs",
        "data": root / "data",
        "config": root / "config",
    }
