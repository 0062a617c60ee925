import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from chatmark.utils.markdown import preview_text, render_message

logger = logging.getLogger(__name__)

_DOCUMENT_ID_RE = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}")

ROLES = {"user", "assistant", "system"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_document_id(document_id: str) -> str:
    if not isinstance(document_id, str) or not _DOCUMENT_ID_RE.fullmatch(document_id):
        raise ValueError(f"Invalid document id: {document_id!r}")
    return document_id


class ChatStore:
    """Chat sessions persisted as one JSON file per document id."""

    def __init__(self, data_dir: Path):
        self.session_dir = data_dir / "sessions"
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _session_path(self, document_id: str) -> Path:
        return self.session_dir / f"{validate_document_id(document_id)}.json"

    def list_sessions(self) -> list[dict[str, Any]]:
        """List sessions sorted by updated timestamp (desc)."""
        sessions: list[dict[str, Any]] = []
        for file in self.session_dir.glob("*.json"):
            try:
                with file.open(encoding="utf-8") as f:
                    sessions.append(json.load(f))
            except (json.JSONDecodeError, OSError):
                logger.warning("Skipping unreadable session file %s", file)
                continue
        return sorted(sessions, key=lambda s: s.get("updated_at", ""), reverse=True)

    def load(self, document_id: str) -> Optional[dict[str, Any]]:
        path = self._session_path(document_id)
        if not path.exists():
            return None
        try:
            with path.open(encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError:
            logger.warning("Corrupt session file %s", path)
            return None

    def get_or_create(self, document_id: str, title: str = "", model: str = "") -> dict[str, Any]:
        with self._lock:
            session = self.load(document_id)
            if session:
                return session
            now = _now()
            session = {
                "document_id": document_id,
                "title": title or document_id,
                "model": model,
                "created_at": now,
                "updated_at": now,
                "messages": [],
            }
            self._save(session)
            return session

    def append_user_message(self, document_id: str, content: str) -> dict[str, Any]:
        return self._append(document_id, _build_message("user", content))

    def append_assistant_message(
        self,
        document_id: str,
        content: str,
        *,
        model: str | None = None,
    ) -> dict[str, Any]:
        message = _build_message("assistant", content)
        message["html"] = render_message(content)
        return self._append(document_id, message, model=model)

    def history(self, document_id: str) -> list[dict[str, str]]:
        """Role/content pairs in the shape the chat-completion API expects."""
        session = self.load(document_id)
        if not session:
            return []
        return [
            {"role": message["role"], "content": message.get("content") or ""}
            for message in session.get("messages", [])
            if message.get("role") in ROLES
        ]

    def clear(self, document_id: str) -> None:
        path = self._session_path(document_id)
        if not path.exists():
            raise FileNotFoundError(f"Session {document_id} not found")
        path.unlink()

    def _append(
        self,
        document_id: str,
        message: dict[str, Any],
        *,
        model: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            session = self._require(document_id)
            session["messages"].append(message)
            session["updated_at"] = message["created_at"]
            if model:
                session["model"] = model
            self._save(session)
        return message

    def _require(self, document_id: str) -> dict[str, Any]:
        session = self.load(document_id)
        if not session:
            raise FileNotFoundError(f"Session {document_id} not found")
        return session

    def _save(self, session: dict[str, Any]) -> None:
        path = self._session_path(session["document_id"])
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(session, f, indent=2, ensure_ascii=False)


def _build_message(role: str, content: str) -> dict[str, Any]:
    return {
        "role": role,
        "content": content,
        "preview": preview_text(content),
        "created_at": _now(),
    }
