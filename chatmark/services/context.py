import logging
import threading
from dataclasses import asdict, dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 8000


@dataclass
class DocumentContext:
    document_id: str
    title: str
    text: str
    original_length: int
    truncated: bool

    def to_dict(self, include_text: bool = False) -> dict:
        data = asdict(self)
        if not include_text:
            data.pop("text")
        return data


class ContextCache:
    """Extracted document text held per document id, truncated on entry."""

    def __init__(self, max_chars: int = DEFAULT_MAX_CHARS):
        self.max_chars = max_chars
        self._entries: dict[str, DocumentContext] = {}
        self._lock = threading.Lock()

    def put(self, document_id: str, text: str, title: str = "") -> DocumentContext:
        original_length = len(text)
        truncated = original_length > self.max_chars
        if truncated:
            text = (
                text[: self.max_chars]
                + "\n\n...[Content truncated for faster processing. Full document has "
                + f"{original_length} characters.]"
            )
            logger.info(
                "Truncated context for %s from %s to %s chars",
                document_id,
                original_length,
                self.max_chars,
            )
        entry = DocumentContext(
            document_id=document_id,
            title=title,
            text=text,
            original_length=original_length,
            truncated=truncated,
        )
        with self._lock:
            self._entries[document_id] = entry
        return entry

    def get(self, document_id: str) -> DocumentContext | None:
        with self._lock:
            return self._entries.get(document_id)

    def drop(self, document_id: str) -> None:
        with self._lock:
            self._entries.pop(document_id, None)

    def context_text(self, document_id: str) -> str:
        """Title plus text in the shape the model prompt expects."""
        entry = self.get(document_id)
        if entry is None:
            return ""
        parts = []
        if entry.title:
            parts.append(f"Title: {entry.title}")
        if entry.text:
            parts.append(entry.text)
        return "\n\n".join(parts)
