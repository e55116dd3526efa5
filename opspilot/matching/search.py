"""
Pattern Search

Fans a classified event out to every capable domain module plus a general
store lookup, then merges, deduplicates by (pattern id, source) and ranks by
confidence. A module that raises or overruns its time budget contributes no
matches; the others still count.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from opspilot.config import SEARCH_MAX_WORKERS, SEARCH_MODULE_TIMEOUT, SEARCH_STORE_LIMIT
from opspilot.matching.modules import ModuleRegistry
from opspilot.matching.modules.base import signature_of
from opspilot.observability.logging import get_logger
from opspilot.observability.telemetry import counter, time_block
from opspilot.storage.models import Event, Match, MatchBreakdown
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)

STORE_SOURCE = "store"

_CONTENT_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("book", "reservation"), "booking"),
    (("door", "access"), "access"),
    (("equipment",), "equipment"),
)


def classify_event(event: Event) -> str:
    """
    Pick the event's classification.

    Order: explicit kind, an error payload in context, keywords in
    context.content, then 'general'.
    """
    if event.kind:
        return event.kind.lower()
    if event.context.get("error"):
        return "error"
    content = event.context.get("content")
    if isinstance(content, str):
        lowered = content.lower()
        for keywords, classification in _CONTENT_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return classification
    return "general"


def event_signature(event: Event, classification: str) -> str:
    """Store-lookup key: classification:category:action:module:intent."""
    return signature_of(
        classification,
        event.category,
        event.action,
        event.context.get("module"),
        event.context.get("intent"),
    )


def dedupe_and_rank(matches: list[Match]) -> list[Match]:
    best: dict[tuple[str, str], Match] = {}
    for match in matches:
        current = best.get(match.dedupe_key)
        if current is None or match.confidence > current.confidence:
            best[match.dedupe_key] = match
    return sorted(best.values(), key=lambda m: m.confidence, reverse=True)


class PatternSearch:
    """Concurrent fan-out over domain modules and the store."""

    def __init__(
        self,
        store: PatternStore,
        registry: ModuleRegistry,
        max_workers: int = SEARCH_MAX_WORKERS,
        module_timeout: float = SEARCH_MODULE_TIMEOUT,
    ) -> None:
        self.store = store
        self.registry = registry
        self.module_timeout = module_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pattern-search"
        )

    def store_lookup(self, event: Event, classification: str) -> list[Match]:
        """General persisted lookup; a candidate's confidence is its own score."""
        signature = event_signature(event, classification)
        patterns = self.store.find_candidates(classification, signature, limit=SEARCH_STORE_LIMIT)
        return [
            Match(
                pattern=pattern,
                event=event,
                confidence=pattern.confidence_score,
                source=STORE_SOURCE,
                breakdown=MatchBreakdown(),
            )
            for pattern in patterns
        ]

    def search(self, event: Event, classification: str | None = None) -> list[Match]:
        """
        Return deduplicated matches, best first.

        Side Effects:
            - Counts search.module_failed for every module that raised or timed out
        """
        classification = classification or classify_event(event)
        modules = self.registry.capable(classification, event)

        with time_block("search.latency_ms"):
            futures: dict[Future[list[Match]], str] = {
                self._executor.submit(module.find_matches, event): module.name for module in modules
            }
            futures[self._executor.submit(self.store_lookup, event, classification)] = STORE_SOURCE

            done, not_done = wait(futures, timeout=self.module_timeout)

            matches: list[Match] = []
            for future in done:
                name = futures[future]
                try:
                    matches.extend(future.result())
                except Exception as e:
                    counter("search.module_failed")
                    logger.warning("Pattern module %s failed for %s: %s", name, classification, e)

            for future in not_done:
                future.cancel()
                counter("search.module_failed")
                logger.warning(
                    "Pattern module %s exceeded %.2fs for %s",
                    futures[future],
                    self.module_timeout,
                    classification,
                )

        ranked = dedupe_and_rank(matches)
        logger.debug(
            "Search %s: %d modules, %d matches, best=%s",
            classification,
            len(modules),
            len(ranked),
            f"{ranked[0].confidence:.3f}" if ranked else "none",
        )
        return ranked

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> PatternSearch:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
