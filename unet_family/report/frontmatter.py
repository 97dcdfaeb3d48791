"""
Front matter parsing for static-site posts.

A post starts with a YAML block delimited by ``---`` lines, followed by the
markdown body.
"""

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import yaml

DELIMITER = "---"
REQUIRED_KEYS = ("layout", "title", "author", "date")


class PostValidationError(ValueError):
    """Raised when a post's front matter is missing or malformed."""


@dataclass
class FrontMatter:
    """Parsed front matter of a post."""

    layout: str
    title: str
    authors: List[str]
    date: datetime.date
    comments: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


def split_front_matter(text: str) -> Tuple[str, str]:
    """
    Split a post into its front matter block and body.

    Args:
        text: Full post text.

    Returns:
        Tuple of (yaml_text, body).

    Raises:
        PostValidationError: If the opening or closing delimiter is missing.
    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != DELIMITER:
        raise PostValidationError("Post must start with a '---' front matter line")

    for i, line in enumerate(lines[1:], start=1):
        if line.strip() == DELIMITER:
            return "".join(lines[1:i]), "".join(lines[i + 1:])

    raise PostValidationError("Front matter is not closed by a '---' line")


def _normalize_authors(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and value and all(isinstance(a, str) for a in value):
        return list(value)
    raise PostValidationError(f"'author' must be a string or a list of strings, got {value!r}")


def _normalize_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.datetime.fromisoformat(value.strip()).date()
        except ValueError as e:
            raise PostValidationError(f"Invalid date {value!r}: {e}") from e
    raise PostValidationError(f"'date' must be a date, got {value!r}")


def parse_front_matter(text: str) -> Tuple[FrontMatter, str]:
    """
    Parse a post's front matter.

    ``author`` may be one name or a list and is normalized to a list;
    ``date`` may be a YAML date, a datetime or an ISO string.

    Args:
        text: Full post text.

    Returns:
        Tuple of (FrontMatter, body).

    Raises:
        PostValidationError: On missing keys, wrong types or invalid YAML.
    """
    yaml_text, body = split_front_matter(text)

    try:
        data = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        raise PostValidationError(f"Front matter is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise PostValidationError("Front matter must be a mapping")

    missing = [k for k in REQUIRED_KEYS if k not in data]
    if missing:
        raise PostValidationError(f"Front matter is missing keys: {missing}")

    for key in ("layout", "title"):
        if not isinstance(data[key], str) or not data[key].strip():
            raise PostValidationError(f"'{key}' must be a non-empty string")

    comments = data.get("comments", False)
    if not isinstance(comments, bool):
        raise PostValidationError(f"'comments' must be true or false, got {comments!r}")

    known = set(REQUIRED_KEYS) | {"comments"}
    front_matter = FrontMatter(
        layout=data["layout"],
        title=data["title"],
        authors=_normalize_authors(data["author"]),
        date=_normalize_date(data["date"]),
        comments=comments,
        extra={k: v for k, v in data.items() if k not in known},
    )
    return front_matter, body
