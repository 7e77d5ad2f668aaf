"""Business rules and constants for cross-source deduplication.

All deduplication thresholds, token vocabularies and URL normalization rules
are centralized here so the cascade is auditable in one place.
"""

import re
from typing import Final

DEFAULT_LOOKBACK_HOURS: Final[int] = 48
"""Only items accepted within this many hours are compared against.

Business rule: the same story resurfacing days later is treated as new
coverage rather than a duplicate.
"""

DEFAULT_TITLE_SIMILARITY: Final[float] = 0.75
"""Minimum Jaccard similarity of significant title words for a match (0.0-1.0).

Example:
    - "Fire in Queens apartment building" vs "Queens apartment building fire"
    - Word sets are identical → similarity 1.0 → duplicate
"""

DEFAULT_CANDIDATE_LIMIT: Final[int] = 100
"""Maximum recent items from other sources fetched for stages 2-4."""

MIN_TITLE_WORD_LENGTH: Final[int] = 4
"""Words shorter than this are ignored when comparing titles."""

MIN_FINGERPRINT_LENGTH: Final[int] = 6
"""Fingerprints shorter than this are too generic to prove a duplicate."""

MAX_FINGERPRINT_TOKENS: Final[int] = 6
"""Only the first tokens extracted (in pattern order) enter the fingerprint."""

TRACKING_PARAMS: Final[frozenset[str]] = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_content",
        "utm_term",
        "fbclid",
        "gclid",
        "ref",
        "source",
        "campaign",
        "medium",
    }
)
"""Query parameters that never identify content."""

WWW_PREFIX_PATTERN: Final[re.Pattern[str]] = re.compile(r"^www\.")

PATH_DATE_SEGMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"/\d{4}/\d{2}/\d{2}/"
)
"""Publisher date folders such as ``/2025/01/02/``."""

PATH_NUMERIC_SUFFIX_PATTERN: Final[re.Pattern[str]] = re.compile(r"-\d+\.html?$")
"""Trailing numeric article ids such as ``-456.html``."""

PATH_LONG_DIGITS_PATTERN: Final[re.Pattern[str]] = re.compile(r"\d{4,}")
"""Any remaining run of four or more digits."""

TITLE_WORD_PATTERN: Final[re.Pattern[str]] = re.compile(
    rf"\b\w{{{MIN_TITLE_WORD_LENGTH},}}\b"
)

FINGERPRINT_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    # Numeric quantities
    re.compile(r"\b\d+\b"),
    # Area names
    re.compile(r"\b(?:queens|brooklyn|bronx|manhattan|staten island)\b"),
    # Transit keywords
    re.compile(r"\b(?:mta|subway|train|bus|ferry)\b"),
    # Incident categories
    re.compile(r"\b(?:fire|crash|delay|accident|shooting|arrest|protest)\b"),
    # Transit line tokens ("l train")
    re.compile(r"\b[a-z] train\b"),
)
"""Salient-token extractors applied to lowercase title + excerpt."""
