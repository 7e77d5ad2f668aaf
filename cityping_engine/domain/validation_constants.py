"""Validation limits for content items and adapter payloads."""

from typing import Final

MIN_PRIORITY: Final[int] = 0
"""Lowest content priority."""

MAX_PRIORITY: Final[int] = 100
"""Highest content priority."""

MAX_REPORT_SAMPLES: Final[int] = 3
"""Payload samples carried in one aggregated validation failure report.

Business rule: administrators get enough examples to diagnose upstream schema
drift without flooding the alert with (possibly personal) payload data. The
full failure list stays in the application logs.
"""

MAX_SAMPLE_PAYLOAD_CHARS: Final[int] = 2_000
"""Payload samples are truncated to this many characters when serialized."""
