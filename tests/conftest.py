from __future__ import annotations

import pytest

from chatmark.app import PREFERENCE_KEYS, create_app
from chatmark.paths import ensure_app_dirs

_ENV_KEYS = set(PREFERENCE_KEYS) | {"LOG_LEVEL", "LOG_FORMAT", "LOG_TYPE", "LOG_FILE", "CHATMARK_ROOT"}


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def app(tmp_path, clean_env):
    dirs = ensure_app_dirs(tmp_path)
    flask_app = create_app(
        tmp_path,
        dirs,
        overrides={"OPENAI_API_KEY": "sk-test-123456789", "LOG_TYPE": "stream"},
    )
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
