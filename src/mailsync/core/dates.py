"""Heuristic normalization of real-world message date strings.

Header and envelope dates only loosely follow RFC 5322: weekday prefixes come
in several shapes, zone offsets are misspelled, named zones are used instead
of numeric offsets, and some clients use ``.`` inside the time. The
normalized value is a join key against rows that share no other identifier,
so every table below is ordered and meant to be appended to as new
malformations turn up.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

# Bare weekday prefixes seen without the usual trailing comma
WEEKDAY_PREFIXES: tuple[str, ...] = ("Wed ", "Sun ", "Sat ")

# Literal substring corrections, applied in order
CORRECTIONS: tuple[tuple[str, str], ...] = (
    ("GMT+00:00", "+0000"),
    ("-0060", "-0100"),
    ("-05-30", "-0530"),
    (" t0100", " +0100"),
)

NAMED_ZONES: dict[str, str] = {
    "CET": "+0100",
    "UT": "+0000",
    "GMT": "+0000",
    "UTC": "+0000",
    "CEST": "+0200",
    "CST": "-0600",
    "PDT": "-0700",
    "PST": "-0800",
    "EST": "-0500",
}

# (zone token, marker required elsewhere in the raw text, offset)
MARKED_ZONES: tuple[tuple[str, str, str], ...] = (
    ("Pacific", "Pacific Standard Time", "-0800"),
    ("%z", "(PDT)", "-0700"),
)

DEFAULT_ZONE = "+0000"
MAX_TOKENS = 5

# Candidate layouts, first match wins. strptime's %d accepts one or two
# digits, so the padded-day variant of the first layout needs no entry.
DATE_FORMATS: tuple[str, ...] = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M %z",
    "%d %b %Y %H:%M",
    "%b %d %H:%M:%S %z %Y",
)

INTERNAL_DATE_FORMAT = "%d-%b-%Y %H:%M:%S %z"


class DateTimeNormalizer:
    """Turns free-form date strings into timezone-aware datetimes."""

    def __init__(
        self,
        *,
        corrections: tuple[tuple[str, str], ...] = CORRECTIONS,
        named_zones: dict[str, str] | None = None,
        formats: tuple[str, ...] = DATE_FORMATS,
    ) -> None:
        self._corrections = corrections
        self._named_zones = NAMED_ZONES if named_zones is None else named_zones
        self._formats = formats

    def normalize(self, raw: str) -> datetime | None:
        """Parse a header or envelope date.

        Returns:
            An aware datetime, or None when no candidate layout matches.
        """
        text = self._strip_weekday(raw.strip())
        text = self._apply_corrections(text)

        parts = text.split()[:MAX_TOKENS]
        if len(parts) > 3 and "." in parts[3]:
            parts[3] = parts[3].replace(".", ":")
        self._resolve_zone(parts, raw)
        if len(parts) < MAX_TOKENS:
            parts.append(DEFAULT_ZONE)

        candidate = " ".join(parts)
        for fmt in self._formats:
            try:
                parsed = datetime.strptime(candidate, fmt)
            except ValueError:
                continue
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed

        logger.debug("Unparsable date %r (normalized to %r)", raw, candidate)
        return None

    @staticmethod
    def _strip_weekday(text: str) -> str:
        if text[3:5] == ", ":
            return text[5:].strip()
        if text.startswith(WEEKDAY_PREFIXES):
            return text[4:].strip()
        if text.startswith(", "):
            return text[2:].strip()
        return text

    def _apply_corrections(self, text: str) -> str:
        for pattern, replacement in self._corrections:
            text = text.replace(pattern, replacement)
        return text

    def _resolve_zone(self, parts: list[str], raw: str) -> None:
        """Replace a named zone token in place with its numeric offset."""
        if len(parts) > 4:
            zone = parts[4]
            if zone in self._named_zones:
                parts[4] = self._named_zones[zone]
                return
            for token, marker, offset in MARKED_ZONES:
                if zone == token and marker in raw:
                    parts[4] = offset
                    return
        elif len(parts) == 4 and parts[3] == "UTC":
            parts[3] = self._named_zones.get("UTC", DEFAULT_ZONE)


_default_normalizer = DateTimeNormalizer()


def normalize(raw: str) -> datetime | None:
    """Normalize ``raw`` with the default rule tables."""
    return _default_normalizer.normalize(raw)


def parse_internal_date(text: str) -> datetime | None:
    """Parse an IMAP INTERNALDATE value such as ``17-Jul-1996 02:44:25 -0700``."""
    try:
        return datetime.strptime(text.strip(), INTERNAL_DATE_FORMAT)
    except ValueError:
        return None
