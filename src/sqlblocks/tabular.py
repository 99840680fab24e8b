"""Turn engine CLI tabular output into records.

Understands the box-drawing modes (``box``, ``duckbox``), ascii ``table``,
``markdown``, ``csv`` and separator-based ``list``/``tabs`` output.  Text
that does not look like a table comes back unchanged.
"""

from __future__ import annotations

import csv
import io

_BOX_MODES = frozenset({"box", "duckbox", "table", "markdown"})
_SEPARATOR_CHARS = frozenset("─━═-+=┼├┤┌┐└┘┬┴╞╡╪:| ")


def _is_rule(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and set(stripped) <= _SEPARATOR_CHARS and not stripped.isspace()


def _split_cells(line: str) -> list[str]:
    stripped = line.strip()
    for bar in ("│", "|", "┃"):
        if stripped.startswith(bar):
            stripped = stripped[1:]
            if stripped.endswith(bar):
                stripped = stripped[:-1]
            return [cell.strip() for cell in stripped.split(bar)]
    return []


def _parse_boxed(text: str) -> list[dict[str, str]] | None:
    header_block: list[list[str]] = []
    rows: list[list[str]] = []
    seen_rule_after_header = False
    for line in text.splitlines():
        if not line.strip():
            continue
        if _is_rule(line):
            if header_block:
                seen_rule_after_header = True
            continue
        cells = _split_cells(line)
        if not cells:
            continue
        if not seen_rule_after_header:
            header_block.append(cells)
        else:
            rows.append(cells)
    if not header_block:
        return None
    if not seen_rule_after_header and len(header_block) > 1:
        return None
    # duckbox prints a column-type row under the names; only the first row names columns.
    header = header_block[0]
    width = len(header)
    records = []
    for cells in rows:
        if len(cells) != width:
            return None
        records.append(dict(zip(header, cells, strict=True)))
    return records


def _parse_separated(text: str, separator: str) -> list[dict[str, str]] | None:
    reader = csv.reader(io.StringIO(text), delimiter=separator)
    lines = [row for row in reader if row]
    if not lines:
        return None
    header, *rows = lines
    width = len(header)
    if width < 2 and not rows:
        return None
    if any(len(row) != width for row in rows):
        return None
    return [dict(zip(header, row, strict=True)) for row in rows]


def parse_tabular(text: str, mode: str = "box", separator: str = "|") -> list[dict[str, str]] | str:
    """Return a list of records, or *text* itself when it is not a table."""
    if not text.strip():
        return text
    if mode in _BOX_MODES:
        records = _parse_boxed(text)
    elif mode == "csv":
        records = _parse_separated(text, ",")
    elif mode == "tabs":
        records = _parse_separated(text, "\t")
    elif mode == "list":
        records = _parse_separated(text, separator[:1] or "|")
    else:
        records = None
    return text if records is None else records
