"""Utility functions for the memory system."""

import json
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any

CHARS_PER_TOKEN = 4


def generate_id(prefix: str) -> str:
    """Generate a locally unique, roughly time-ordered ID.

    Args:
        prefix: Entity prefix such as "fact" or "proposal".

    Returns:
        An ID of the form ``<prefix>_<millis>_<random>``.
    """
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def normalize_timestamp(value: str | None) -> str | None:
    """Normalize an ISO timestamp to UTC so that string comparison is ordering.

    Naive timestamps are assumed to be UTC. A trailing ``Z`` is accepted.

    Args:
        value: ISO-8601 timestamp or None.

    Returns:
        Normalized ISO timestamp, or None for empty input.

    Raises:
        ValueError: If the value is not a valid ISO timestamp.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def estimate_tokens(text: str) -> int:
    """Estimate token count for text.

    Uses a simple heuristic of ~4 characters per token for English text.
    """
    return len(text) // CHARS_PER_TOKEN


def sanitize_for_embedding(text: str) -> str:
    """Collapse whitespace so that equivalent text embeds identically."""
    return re.sub(r"\s+", " ", text).strip()


def embedding_to_json(embedding: list[float] | None) -> str | None:
    """Serialize an embedding vector for storage."""
    if embedding is None:
        return None
    return json.dumps(embedding)


def json_to_embedding(json_str: str | None) -> list[float] | None:
    """Parse a stored embedding vector, returning None if absent or corrupt."""
    if not json_str:
        return None
    try:
        vector = json.loads(json_str)
    except json.JSONDecodeError:
        return None
    if not isinstance(vector, list) or not vector:
        return None
    return [float(v) for v in vector]


def parse_json_list(json_str: str | None) -> list[Any]:
    """Parse a JSON array column, tolerating NULL and corrupt values."""
    if not json_str:
        return []
    try:
        value = json.loads(json_str)
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []


def truncate(text: str, max_length: int = 80) -> str:
    """Shorten text for display, breaking at a word boundary when possible."""
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length // 2:
        truncated = truncated[:last_space]
    return truncated.rstrip() + "..."
