"""Line-oriented block segmentation for the chat markdown dialect.

The scanner walks already escaped, inline-transformed text with a single
cursor. Each block type has a named predicate; the first rule that accepts
the line at the cursor consumes it (and any continuation lines) and emits one
HTML fragment. Nothing is re-read once consumed.
"""

from __future__ import annotations

import re
from typing import Callable

PLACEHOLDER_RE = re.compile(r"@@BLOCK(\d+)@@")
QUOTE_PREFIX = "&gt; "

_RULE_RE = re.compile(r"---")
_HEADING_RE = re.compile(r"<h([234])>.*</h\1>")
_DIVIDER_RE = re.compile(r"[\s|:]*-[\s|:-]*")
_ORDERED_RE = re.compile(r"\d+\. (.*)")
_UNORDERED_RE = re.compile(r"[-*] (.*)")
_CELL_SPLIT_RE = re.compile(r"(?<!\\)\|")

ORDERED = "ol"
UNORDERED = "ul"


def is_blank(line: str) -> bool:
    return not line.strip()


def is_placeholder(line: str) -> bool:
    return PLACEHOLDER_RE.fullmatch(line.strip()) is not None


def is_rule(line: str) -> bool:
    return _RULE_RE.fullmatch(line.strip()) is not None


def is_heading(line: str) -> bool:
    return _HEADING_RE.fullmatch(line.strip()) is not None


def is_quote(line: str) -> bool:
    return line.startswith(QUOTE_PREFIX)


def is_divider(line: str) -> bool:
    return _DIVIDER_RE.fullmatch(line) is not None


def starts_table(line: str, next_line: str | None) -> bool:
    """A pipe line directly followed by a divider row opens a table."""
    return "|" in line and next_line is not None and is_divider(next_line)


def list_marker(line: str) -> tuple[str, str] | None:
    """Return ``(marker_class, item_text)`` for a list item line."""
    match = _ORDERED_RE.fullmatch(line)
    if match:
        return ORDERED, match.group(1)
    match = _UNORDERED_RE.fullmatch(line)
    if match:
        return UNORDERED, match.group(1)
    return None


def split_cells(line: str) -> list[str]:
    """Split a table row on unescaped pipes, dropping edge-pipe empties."""
    stripped = line.strip()
    cells = [cell.strip().replace("\\|", "|") for cell in _CELL_SPLIT_RE.split(stripped)]
    if stripped.startswith("|") and cells and not cells[0]:
        cells = cells[1:]
    if stripped.endswith("|") and not stripped.endswith("\\|") and cells and not cells[-1]:
        cells = cells[:-1]
    return cells


class BlockScanner:
    """Consume lines in order and emit one HTML fragment per block."""

    def __init__(self, lines: list[str]):
        self.lines = lines
        self.pos = 0
        self.blocks: list[str] = []
        self._rules: list[tuple[Callable[[], bool], Callable[[], str]]] = [
            (self._at_placeholder, self._take_single),
            (self._at_rule, self._take_rule),
            (self._at_heading, self._take_single),
            (self._at_quote, self._take_quote),
            (self._at_table, self._take_table),
            (self._at_list, self._take_list),
        ]

    def scan(self) -> list[str]:
        while self.pos < len(self.lines):
            if is_blank(self.current):
                self.pos += 1
                continue
            for matches, take in self._rules:
                if matches():
                    self.blocks.append(take())
                    break
            else:
                self.blocks.append(self._take_paragraph())
        return self.blocks

    @property
    def current(self) -> str:
        return self.lines[self.pos]

    def _peek(self, offset: int = 1) -> str | None:
        index = self.pos + offset
        if index < len(self.lines):
            return self.lines[index]
        return None

    def _starts_block(self, index: int) -> bool:
        line = self.lines[index]
        next_line = self.lines[index + 1] if index + 1 < len(self.lines) else None
        return (
            is_blank(line)
            or is_placeholder(line)
            or is_rule(line)
            or is_heading(line)
            or is_quote(line)
            or starts_table(line, next_line)
            or list_marker(line) is not None
        )

    # predicates bound to the cursor

    def _at_placeholder(self) -> bool:
        return is_placeholder(self.current)

    def _at_rule(self) -> bool:
        return is_rule(self.current)

    def _at_heading(self) -> bool:
        return is_heading(self.current)

    def _at_quote(self) -> bool:
        return is_quote(self.current)

    def _at_table(self) -> bool:
        return starts_table(self.current, self._peek())

    def _at_list(self) -> bool:
        return list_marker(self.current) is not None

    # consumers

    def _take_single(self) -> str:
        line = self.current.strip()
        self.pos += 1
        return line

    def _take_rule(self) -> str:
        self.pos += 1
        return "<hr>"

    def _take_quote(self) -> str:
        parts: list[str] = []
        while self.pos < len(self.lines) and is_quote(self.current):
            parts.append(self.current[len(QUOTE_PREFIX):])
            self.pos += 1
        return f"<blockquote>{'<br>'.join(parts)}</blockquote>"

    def _take_table(self) -> str:
        header = split_cells(self.current)
        self.pos += 2  # header and divider

        rows: list[list[str]] = []
        while (
            self.pos < len(self.lines)
            and not is_blank(self.current)
            and "|" in self.current
        ):
            rows.append(_fit_row(split_cells(self.current), len(header)))
            self.pos += 1

        head_html = "".join(f"<th>{cell}</th>" for cell in header)
        table = f"<table><thead><tr>{head_html}</tr></thead>"
        if rows:
            body_html = "".join(
                "<tr>" + "".join(f"<td>{cell}</td>" for cell in row) + "</tr>"
                for row in rows
            )
            table += f"<tbody>{body_html}</tbody>"
        return table + "</table>"

    def _take_list(self) -> str:
        marker_class, _ = list_marker(self.current)
        items: list[str] = []
        while self.pos < len(self.lines):
            marker = list_marker(self.current)
            if marker is None or marker[0] != marker_class:
                break
            items.append(f"<li>{marker[1]}</li>")
            self.pos += 1
        return f"<{marker_class}>{''.join(items)}</{marker_class}>"

    def _take_paragraph(self) -> str:
        parts = [self.current]
        self.pos += 1
        while self.pos < len(self.lines) and not self._starts_block(self.pos):
            parts.append(self.current)
            self.pos += 1
        return f"<p>{'<br>'.join(parts)}</p>"


def _fit_row(cells: list[str], width: int) -> list[str]:
    if len(cells) >= width:
        return cells[:width]
    return cells + [""] * (width - len(cells))


def segment(text: str) -> list[str]:
    """Split inline-transformed text into rendered block fragments."""
    return BlockScanner(text.split("\n")).scan()
