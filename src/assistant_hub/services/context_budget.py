from __future__ import annotations

"""Hard truncation of text to a whitespace-token budget."""


def count_units(text: str) -> int:
    return len((text or "").split())


def truncate(text: str, max_units: int) -> str:
    """Keep at most ``max_units`` whitespace-delimited tokens.

    Tokens are rejoined with single spaces, so the result is normalized even
    when nothing is dropped. Truncating an already truncated string to the
    same or a larger budget returns it unchanged.
    """
    if max_units < 0:
        raise ValueError("max_units must be non-negative")
    words = (text or "").split()
    return " ".join(words[:max_units])
