from pathlib import Path

from dotenv import load_dotenv

from chatmark.utils.markdown import render_markdown, strip_markdown


def _maybe_load_dotenv(root: Path) -> None:
    dotenv_path = root / ".env"
    if not dotenv_path.exists():
        return
    load_dotenv(dotenv_path=str(dotenv_path), override=False)


def create_app(cli_root: str | None = None):
    from chatmark.app import create_app as _create_app
    from chatmark.paths import ensure_app_dirs, get_app_root

    root = get_app_root(cli_root=cli_root)
    _maybe_load_dotenv(root)
    dirs = ensure_app_dirs(root)
    return _create_app(root, dirs)


__all__ = ["create_app", "render_markdown", "strip_markdown"]
