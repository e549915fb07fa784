"""
Text normalization shared by dedup, the skip-cache and the company registry
"""

import re
from datetime import datetime, timezone
from typing import Any

_WHITESPACE = re.compile(r"\s+")


def normalize_company_name(name: str | None) -> str:
    """
    Normalize a company name for registry and cache keys

    Lower-cases and trims only. Suffixes like "Inc" are kept on purpose so
    "Acme" and "Acme Inc" stay distinct registry rows.

    Examples:
        "  Acme Inc " -> "acme inc"
        "ACME INC"    -> "acme inc"
    """
    if not name:
        return ""
    return name.strip().lower()


def normalize_title(title: str | None) -> str:
    """Lower-case, trim and collapse internal whitespace of a job title"""
    if not title:
        return ""
    return _WHITESPACE.sub(" ", title.strip().lower())


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def normalize_timestamp(value: Any) -> str | None:
    """
    Convert a scraper timestamp to canonical UTC ISO-8601 (seconds precision)

    Accepts ISO strings with a "T" or space separator, with or without a
    trailing "Z" or offset, and epoch seconds or milliseconds as numbers or
    digit strings. Naive values are taken as UTC. Returns None if unparseable.

    Examples:
        "2026-10-18 09:00:00"  -> "2026-10-18T09:00:00+00:00"
        "2026-10-18T08:00:00Z" -> "2026-10-18T08:00:00+00:00"
        1760000000             -> "2025-10-09T08:53:20+00:00"
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if re.fullmatch(r"\d+(\.\d+)?", text):
            value = float(text)
        else:
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc).isoformat(timespec="seconds")

    if isinstance(value, (int, float)):
        seconds = float(value)
        # Millisecond epochs
        if seconds > 1e11:
            seconds /= 1000
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
        return parsed.isoformat(timespec="seconds")

    return None
