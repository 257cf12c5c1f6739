"""
Parsing for Roam Research JSON exports.

An export is a JSON array of pages. Each page has a title, timestamps and
an ordered list of child blocks; each block has a uid, its text
(``string``), timestamps and its own ordered children. Keys are
kebab-case (``edit-time``). Timestamps are epoch milliseconds.

See David Bieber's notes on the format:
https://davidbieber.com/snippets/2020-04-25-roam-json-export/
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .errors import ImportValidationError


@dataclass
class ExportBlock:
    """A block as it appears in the export, with its subtree."""
    uid: str
    string: str
    create_time: Optional[int] = None
    edit_time: Optional[int] = None
    # Explicit sibling order, when the export carries one
    order: Optional[int] = None
    children: list["ExportBlock"] = field(default_factory=list)

    def count(self) -> int:
        """Number of blocks in this subtree, including this one."""
        return 1 + sum(child.count() for child in self.children)


@dataclass
class ExportPage:
    """A page as it appears in the export."""
    title: str
    edit_time: int
    create_time: Optional[int] = None
    children: list[ExportBlock] = field(default_factory=list)

    def count_blocks(self) -> int:
        return sum(child.count() for child in self.children)


def _timestamp(value: Any, what: str, owner: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ImportValidationError(
            f"Invalid {what} {value!r} on {owner!r}", block_id=owner,
        )
    return int(value)


def parse_block(data: dict) -> ExportBlock:
    """Parse one block dict (and its subtree)."""
    if not isinstance(data, dict):
        raise ImportValidationError(f"Block must be an object, got {type(data).__name__}")
    uid = data.get("uid")
    if not isinstance(uid, str) or not uid:
        raise ImportValidationError(
            f"Block without a uid (text: {str(data.get('string', ''))[:60]!r})",
            block_id=uid if isinstance(uid, str) else None,
        )
    string = data.get("string", "")
    if not isinstance(string, str):
        raise ImportValidationError(f"Block {uid!r} has non-text contents", block_id=uid)

    order = data.get("order")
    if order is not None and (isinstance(order, bool) or not isinstance(order, int)):
        raise ImportValidationError(f"Block {uid!r} has invalid order {order!r}", block_id=uid)

    return ExportBlock(
        uid=uid,
        string=string,
        create_time=_timestamp(data.get("create-time"), "create-time", uid),
        edit_time=_timestamp(data.get("edit-time"), "edit-time", uid),
        order=order,
        children=[parse_block(child) for child in data.get("children") or []],
    )


def parse_page(data: dict) -> ExportPage:
    """Parse one page dict (and its block tree)."""
    if not isinstance(data, dict):
        raise ImportValidationError(f"Page must be an object, got {type(data).__name__}")
    title = data.get("title")
    if not isinstance(title, str) or not title:
        raise ImportValidationError("Page without a title", block_id=None)
    edit_time = _timestamp(data.get("edit-time"), "edit-time", title)
    if edit_time is None:
        raise ImportValidationError(f"Page {title!r} has no edit-time", block_id=title)

    return ExportPage(
        title=title,
        edit_time=edit_time,
        create_time=_timestamp(data.get("create-time"), "create-time", title),
        children=[parse_block(child) for child in data.get("children") or []],
    )


def parse_export(data: Any) -> list[ExportPage]:
    """Parse a decoded export (a list of page dicts)."""
    if not isinstance(data, list):
        raise ImportValidationError(
            f"Export must be a JSON array of pages, got {type(data).__name__}"
        )
    return [parse_page(page) for page in data]


def load_export(path: Path) -> list[ExportPage]:
    """Read and parse an export file."""
    with open(path, "rb") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ImportValidationError(f"Export {path} is not valid JSON: {e}") from e
    return parse_export(data)
