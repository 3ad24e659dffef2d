"""Branch name to filesystem name conversion."""

from __future__ import annotations

import hashlib
import re

MAX_NAME_LENGTH = 200
_HASH_LENGTH = 8

_INVALID_CHARS = re.compile(r'[/\\:*?"<>|\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_DASH_RUNS = re.compile(r"-{2,}")
_RESERVED = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\..*)?$", re.IGNORECASE)


def _clean(value: str) -> str:
    value = _INVALID_CHARS.sub("-", value)
    value = _WHITESPACE.sub("_", value)
    value = _DASH_RUNS.sub("-", value)
    value = value.lstrip("-").rstrip(".-")
    if not value:
        return "_branch"
    if _RESERVED.match(value):
        return f"_{value}"
    return value


def sanitize_branch_name(branch: str) -> str:
    """Return a directory name safe on every platform for ``branch``.

    Names longer than ``MAX_NAME_LENGTH`` are truncated and suffixed with a
    short hash of the original branch so distinct long names stay distinct.
    Applying the function to its own output returns the same value.
    """

    cleaned = _clean(branch)
    if len(cleaned) <= MAX_NAME_LENGTH:
        return cleaned

    digest = hashlib.sha1(branch.encode("utf-8")).hexdigest()[:_HASH_LENGTH]
    head = cleaned[: MAX_NAME_LENGTH - _HASH_LENGTH - 1].rstrip(".-")
    return f"{head}-{digest}"


__all__ = ["MAX_NAME_LENGTH", "sanitize_branch_name"]
