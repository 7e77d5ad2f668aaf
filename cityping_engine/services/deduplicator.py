"""Cross-source story deduplication.

Cascade (first match wins):
1. Exact locator, case-insensitive, against every source
2. Locator signature (host + canonical path) against other sources
3. Title similarity (Jaccard over words of 4+ chars) against other sources
4. Content fingerprint (salient tokens) against other sources

Only items accepted within the lookback window are compared. The check holds
no lock: the store checks for a fresh cross-source row with the same
signature atomically with the insert, and a conflicting insert is reported
as a duplicate detected on insert.
"""

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qsl, urlencode, urlsplit

from cityping_engine.config.logging_config import get_logger
from cityping_engine.domain.deduplication_constants import (
    FINGERPRINT_PATTERNS,
    MAX_FINGERPRINT_TOKENS,
    PATH_DATE_SEGMENT_PATTERN,
    PATH_LONG_DIGITS_PATTERN,
    PATH_NUMERIC_SUFFIX_PATTERN,
    TITLE_WORD_PATTERN,
    TRACKING_PARAMS,
    WWW_PREFIX_PATTERN,
)
from cityping_engine.domain.models import (
    AcceptedItem,
    BatchDedupResult,
    DedupCheckResult,
    DeduplicationCandidate,
    DuplicateMatch,
    MatchStage,
)
from cityping_engine.domain.policies import DedupPolicy
from cityping_engine.domain.protocols import AcceptedItemStoreProtocol
from cityping_engine.observability.metrics import DUPLICATES_DETECTED_TOTAL

logger = get_logger(__name__)

NOT_DUPLICATE = DedupCheckResult(is_duplicate=False)


def locator_signature(locator: str) -> str | None:
    """Canonical host + path signature shared by re-published stories.

    Strips ``www.``, tracking parameters and trailing slashes, then erases
    date folders, numeric article suffixes and long digit runs.

    Args:
        locator: Raw URL-like reference

    Returns:
        Signature string, or None when the locator cannot be parsed

    Example:
        >>> locator_signature("https://www.b.com/news/2025/01/02/l-train-456.html")
        'b.com/news/DATE/l-train.html'
    """
    try:
        parts = urlsplit(locator.strip())
        hostname = parts.hostname
    except ValueError:
        return None
    if not parts.scheme or not hostname:
        return None

    host = WWW_PREFIX_PATTERN.sub("", hostname.lower())
    path = PATH_DATE_SEGMENT_PATTERN.sub("/DATE/", parts.path)
    path = PATH_NUMERIC_SUFFIX_PATTERN.sub(".html", path)
    path = PATH_LONG_DIGITS_PATTERN.sub("ID", path)
    path = path.rstrip("/")

    params = sorted(
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    )
    query = f"?{urlencode(params)}" if params else ""
    return f"{host}{path}{query}"


def _title_words(title: str) -> set[str]:
    return set(TITLE_WORD_PATTERN.findall(title.lower()))


def title_similarity(title_a: str, title_b: str) -> float:
    """Jaccard similarity of the significant (4+ char) words of two titles.

    Symmetric; returns 0.0 when either title has no significant words.
    """
    words_a = _title_words(title_a)
    words_b = _title_words(title_b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def content_fingerprint(title: str, excerpt: str | None = None) -> str:
    """Sorted, pipe-joined salient tokens of title and excerpt.

    Example:
        >>> content_fingerprint("L train delays due to signal problem")
        'l train|train'
    """
    text = f"{title} {excerpt or ''}".lower()
    tokens: list[str] = []
    for pattern in FINGERPRINT_PATTERNS:
        tokens.extend(pattern.findall(text))
    return "|".join(sorted(tokens[:MAX_FINGERPRINT_TOKENS]))


def build_accepted_item(
    candidate: DeduplicationCandidate, accepted_at: datetime
) -> AcceptedItem:
    return AcceptedItem(
        source=candidate.source,
        title=candidate.title,
        locator=candidate.locator,
        excerpt=candidate.excerpt,
        external_id=candidate.external_id,
        locator_signature=locator_signature(candidate.locator),
        fingerprint=content_fingerprint(candidate.title, candidate.excerpt),
        accepted_at=accepted_at,
    )


def _duplicate(
    existing: AcceptedItem,
    stage: MatchStage,
    similarity: float | None = None,
    detected_on_insert: bool = False,
) -> DedupCheckResult:
    return DedupCheckResult(
        is_duplicate=True,
        existing_item_id=str(existing.item_id),
        existing_source=existing.source,
        match_stage=stage,
        similarity=similarity,
        detected_on_insert=detected_on_insert,
    )


class DeduplicationService:
    """Runs the cascade against the accepted-item store."""

    def __init__(
        self,
        store: AcceptedItemStoreProtocol,
        policy: DedupPolicy | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or DedupPolicy()

    @property
    def policy(self) -> DedupPolicy:
        return self._policy

    def _cutoff(self, now: datetime) -> datetime:
        return now - timedelta(hours=self._policy.lookback_hours)

    def _match_fuzzy(
        self,
        candidate: DeduplicationCandidate,
        signature: str | None,
        fingerprint: str,
        pool: Iterable[AcceptedItem],
    ) -> DedupCheckResult | None:
        """Stages 2-4 against an in-memory pool of other-source items."""
        others = [item for item in pool if item.source != candidate.source]

        if signature:
            for existing in others:
                if existing.locator_signature == signature:
                    return _duplicate(existing, MatchStage.LOCATOR_SIGNATURE)

        for existing in others:
            score = title_similarity(candidate.title, existing.title)
            if score >= self._policy.title_similarity:
                return _duplicate(existing, MatchStage.TITLE_SIMILARITY, score)

        if len(fingerprint) >= self._policy.min_fingerprint_length:
            for existing in others:
                existing_fingerprint = existing.fingerprint or content_fingerprint(
                    existing.title, existing.excerpt
                )
                if existing_fingerprint == fingerprint:
                    return _duplicate(existing, MatchStage.FINGERPRINT)

        return None

    def check_duplicate(
        self,
        candidate: DeduplicationCandidate,
        now: datetime | None = None,
        batch_accepted: Sequence[AcceptedItem] = (),
    ) -> DedupCheckResult:
        """Run the cascade for one candidate.

        Args:
            candidate: Incoming story
            now: Reference time for the lookback window
            batch_accepted: Items accepted earlier in the same batch

        Returns:
            DedupCheckResult naming the stage that matched, if any
        """
        now = now or datetime.now(tz=UTC)
        cutoff = self._cutoff(now)
        raw_locator = candidate.locator.strip().lower()

        existing = self._store.find_accepted_by_locator(raw_locator, cutoff)
        if existing is None:
            existing = next(
                (
                    item
                    for item in batch_accepted
                    if item.locator.strip().lower() == raw_locator
                ),
                None,
            )
        if existing is not None:
            return self._report(candidate, _duplicate(existing, MatchStage.LOCATOR))

        signature = locator_signature(candidate.locator)
        fingerprint = content_fingerprint(candidate.title, candidate.excerpt)

        if signature:
            existing = self._store.find_accepted_by_signature(
                signature, candidate.source, cutoff
            )
            if existing is not None:
                return self._report(
                    candidate, _duplicate(existing, MatchStage.LOCATOR_SIGNATURE)
                )

        recent = self._store.list_recent_accepted(
            candidate.source, cutoff, self._policy.candidate_limit
        )
        result = self._match_fuzzy(
            candidate, signature, fingerprint, [*recent, *batch_accepted]
        )
        if result is not None:
            return self._report(candidate, result)
        return NOT_DUPLICATE

    def deduplicate_batch(
        self,
        candidates: Sequence[DeduplicationCandidate],
        now: datetime | None = None,
    ) -> BatchDedupResult:
        """Split candidates into unique and duplicate, in input order.

        Candidates admitted earlier in the batch take part in the comparison,
        so two copies of one story arriving together are not both admitted.
        """
        now = now or datetime.now(tz=UTC)
        result = BatchDedupResult()
        admitted: list[AcceptedItem] = []

        for candidate in candidates:
            check = self.check_duplicate(candidate, now, batch_accepted=admitted)
            if check.is_duplicate:
                result.duplicates.append(DuplicateMatch(candidate=candidate, result=check))
            else:
                result.unique.append(candidate)
                admitted.append(build_accepted_item(candidate, now))

        logger.info(
            "dedup_batch_complete",
            candidates=len(candidates),
            unique=len(result.unique),
            duplicates=len(result.duplicates),
        )
        return result

    def accept(
        self, candidate: DeduplicationCandidate, now: datetime | None = None
    ) -> tuple[AcceptedItem | None, DedupCheckResult]:
        """Persist a candidate that passed the cascade.

        A fresh row from another source with the same signature means another
        writer accepted the same story first; it is reported as a duplicate.

        Returns:
            (stored item or None, check result)
        """
        now = now or datetime.now(tz=UTC)
        item = build_accepted_item(candidate, now)
        conflict = self._store.insert_accepted_item(item, stale_before=self._cutoff(now))
        if conflict is None:
            return item, NOT_DUPLICATE
        result = _duplicate(
            conflict, MatchStage.LOCATOR_SIGNATURE, detected_on_insert=True
        )
        return None, self._report(candidate, result)

    def _report(
        self, candidate: DeduplicationCandidate, result: DedupCheckResult
    ) -> DedupCheckResult:
        DUPLICATES_DETECTED_TOTAL.labels(stage=result.match_stage.value).inc()
        logger.info(
            "duplicate_detected",
            source=candidate.source,
            external_id=candidate.external_id,
            stage=result.match_stage.value,
            existing_item_id=result.existing_item_id,
            existing_source=result.existing_source,
            similarity=result.similarity,
            detected_on_insert=result.detected_on_insert,
        )
        return result
