"""Utility functions for ccchat."""

import hashlib
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def hash_message(text: str) -> str:
    """Stable short hash of an exact message text (used for echo detection)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def split_message(text: str, max_len: int) -> list[str]:
    """Split a message into parts that fit the transport's length limit.

    Cuts at the last paragraph break (blank line) inside the window, then the
    last line break, then hard-cuts at ``max_len``. The newlines at a cut are
    dropped from the start of the next part, so joining the parts with the
    dropped newlines restored gives back the original text.

    Always returns at least one part (an empty text yields ``[""]``).
    """
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    if len(text) <= max_len:
        return [text]

    parts: list[str] = []
    remaining = text

    while remaining:
        if len(remaining) <= max_len:
            parts.append(remaining)
            break

        window = remaining[:max_len]
        cut = window.rfind("\n\n")
        if cut <= 0:
            cut = window.rfind("\n")
        if cut <= 0:
            cut = max_len

        parts.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")

    return parts


def truncate(text: str, max_len: int = 80) -> str:
    """Shorten text for log previews."""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."
