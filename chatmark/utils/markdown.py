import re

import bleach

from chatmark.utils.blocks import segment

_FENCE_RE = re.compile(r"```(\w*)\n([\s\S]*?)```")
_INLINE_CODE_RE = re.compile(r"`([^`\n]+)`")
_TOKEN_RE = re.compile(r"@@(BLOCK|CODE)(\d+)@@")

# Typed "@" is parked on NUL while tokens are live, so user text never forms one.
_AT_SENTINEL = "\x00"

_ESCAPES = str.maketrans(
    {
        "&": "&amp;",
        "<": "&lt;",
        ">": "&gt;",
        '"': "&quot;",
        "'": "&#039;",
    }
)

# Longest prefix first so "### " is never read as "# ".
_HEADINGS = (
    (re.compile(r"^### (.+)$", re.M), r"<h4>\1</h4>"),
    (re.compile(r"^## (.+)$", re.M), r"<h3>\1</h3>"),
    (re.compile(r"^# (.+)$", re.M), r"<h2>\1</h2>"),
)

# Most specific marker first. Unlike a bare `\*(.+?)\*`, markers must hug
# their content and underscores only pair at word boundaries, so `2 * 3 * 4`
# and snake_case survive. Bodies stop at the next marker character, which
# keeps every pattern linear on long lines of unpaired markers.
_EMPHASIS = (
    (re.compile(r"\*\*\*(?![\s*])([^*\n]*?[^\s*])\*\*\*"), r"<strong><em>\1</em></strong>"),
    (re.compile(r"\*\*(?![\s*])((?:[^*\n]|\*(?!\*))*?[^\s*])\*\*"), r"<strong>\1</strong>"),
    (re.compile(r"\*(?![\s*])([^*\n]*?[^\s*])\*"), r"<em>\1</em>"),
    (re.compile(r"(?<!\w)__(?![\s_])([^_\n]*?[^\s_])__(?!\w)"), r"<strong>\1</strong>"),
    (re.compile(r"(?<!\w)_(?![\s_])([^_\n]*?[^\s_])_(?!\w)"), r"<em>\1</em>"),
)

_LINK_RE = re.compile(r"\[([^\[\]\n]+)\]\(([^()\s]+)\)")
_LINK_HTML = r'<a href="\2" target="_blank" rel="noopener">\1</a>'

_ALLOWED_TAGS = [
    "p",
    "br",
    "pre",
    "code",
    "strong",
    "em",
    "ul",
    "ol",
    "li",
    "blockquote",
    "hr",
    "h2",
    "h3",
    "h4",
    "a",
    "table",
    "thead",
    "tbody",
    "tr",
    "th",
    "td",
]
_ALLOWED_ATTRS = {
    "a": ["href", "target", "rel"],
    "pre": ["class"],
}
_ALLOWED_PROTOCOLS = ["http", "https", "mailto"]


def escape_html(text: str) -> str:
    """Replace the five HTML-significant characters with entities."""
    return text.translate(_ESCAPES)


def extract_code_blocks(text: str) -> tuple[str, list[str]]:
    """Swap fenced code for placeholder lines; return the text and the blocks."""
    blocks: list[str] = []

    def _stash(match: re.Match) -> str:
        lang, body = match.group(1), match.group(2)
        lang_class = f' class="lang-{lang}"' if lang else ""
        blocks.append(f"<pre{lang_class}><code>{escape_html(body.strip())}</code></pre>")
        return f"\n@@BLOCK{len(blocks) - 1}@@\n"

    return _FENCE_RE.sub(_stash, text), blocks


def transform_inline(text: str) -> tuple[str, list[str]]:
    """Apply inline code, heading, emphasis and link passes to escaped text.

    Inline code spans are stashed behind ``@@CODE<n>@@`` tokens so the later
    passes cannot reach their content; the stashed spans are returned
    alongside the text for the reassembler.
    """
    spans: list[str] = []

    def _stash(match: re.Match) -> str:
        spans.append(f"<code>{match.group(1)}</code>")
        return f"@@CODE{len(spans) - 1}@@"

    text = _INLINE_CODE_RE.sub(_stash, text)
    for pattern, replacement in _HEADINGS:
        text = pattern.sub(replacement, text)
    for pattern, replacement in _EMPHASIS:
        text = pattern.sub(replacement, text)
    text = _LINK_RE.sub(_LINK_HTML, text)
    return text, spans


def reassemble(blocks: list[str], code_blocks: list[str], code_spans: list[str] | None = None) -> str:
    """Join block fragments and resolve placeholder tokens.

    Both token kinds are resolved in one pass, so markup inserted for one
    token is never scanned for another.
    """
    stores = {"BLOCK": code_blocks, "CODE": code_spans or []}
    return _TOKEN_RE.sub(lambda m: _lookup(stores[m.group(1)], m.group(2)), "\n".join(blocks))


def _lookup(store: list[str], index: str) -> str:
    position = int(index)
    if position < len(store):
        return store[position]
    return ""


def render_markdown(md_text: str) -> str:
    """Return HTML for chat-dialect markdown. Never raises for string input."""
    if not md_text:
        return ""
    text = md_text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace(_AT_SENTINEL, "\ufffd").replace("@", _AT_SENTINEL)
    text, code_blocks = extract_code_blocks(text)
    text = escape_html(text)
    text, code_spans = transform_inline(text)
    html = reassemble(segment(text), code_blocks, code_spans)
    return html.replace(_AT_SENTINEL, "@")


def sanitize_html(html_text: str) -> str:
    """Restrict HTML to the tags, attributes and URL schemes the renderer emits."""
    return bleach.clean(
        html_text,
        tags=_ALLOWED_TAGS,
        attributes=_ALLOWED_ATTRS,
        protocols=_ALLOWED_PROTOCOLS,
        strip=True,
    )


def render_message(md_text: str) -> str:
    """Render markdown for a transcript bubble: render, then sanitize."""
    return sanitize_html(render_markdown(md_text))


_STRIP_STEPS = (
    (re.compile(r"```[\s\S]*?```"), ""),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"^(?:#{1,6}[ \t]+)+", re.M), ""),
    *((pattern, r"\1") for pattern, _ in _EMPHASIS),
    (re.compile(r"\[([^\[\]]+)\]\([^()]+\)"), r"\1"),
    # Whole runs of stacked prefixes go at once ("> - # x" becomes "x").
    (re.compile(r"^(?:(?:[-*>]|\d+\.) |#{1,6}[ \t]+)+", re.M), ""),
)


def _strip_once(text: str) -> str:
    for pattern, replacement in _STRIP_STEPS:
        text = pattern.sub(replacement, text)
    return text.strip()


def strip_markdown(md_text: str) -> str:
    """Remove markdown syntax, keeping the text content."""
    text = _strip_once(md_text)
    # Unwrapping can expose a fresh marker pair; every pass shortens the text.
    while True:
        again = _strip_once(text)
        if again == text:
            return text
        text = again


def preview_text(md_text: str, limit: int = 120) -> str:
    """Single-line plain-text preview, cut at ``limit`` characters."""
    text = " ".join(strip_markdown(md_text).split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."
