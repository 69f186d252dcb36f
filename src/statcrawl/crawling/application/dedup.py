from __future__ import annotations

import threading
from typing import Hashable, Iterable

from statcrawl.main.logging import get_logger

logger = get_logger(__name__)

# A domain is a mirror only when every sampled id was already crawled elsewhere.
DUPLICATE_DOMAIN_THRESHOLD = 1.0


class Deduplicator:
    """Run-scoped set of identity keys shared by all workers of one crawl.

    The first caller to mark a key wins; the set never shrinks while the
    run lasts. Build a fresh instance per run and pass it down explicitly.
    """

    def __init__(self, name: str = "dedup") -> None:
        self.name = name
        self._seen: set[Hashable] = set()
        self._lock = threading.Lock()

    def check_and_mark(self, key: Hashable) -> bool:
        """Mark ``key`` as seen. Returns True when it had already been seen."""
        with self._lock:
            if key in self._seen:
                return True
            self._seen.add(key)
            return False

    def is_seen(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._seen

    def duplicate_ratio(self, sample: Iterable[Hashable]) -> float:
        """Share of ``sample`` already seen, without marking anything. Empty sample -> 0."""
        keys = list(sample)
        if not keys:
            return 0.0
        with self._lock:
            seen = sum(1 for key in keys if key in self._seen)
        return seen / len(keys)

    def is_duplicate_domain(self, sample: Iterable[Hashable]) -> bool:
        """True when every id in the domain's newest segment was crawled already.

        Anything short of a full match (99% included) means the domain gets a
        full crawl. An empty sample is never a duplicate.
        """
        keys = list(sample)
        if not keys:
            return False
        ratio = self.duplicate_ratio(keys)
        logger.debug(
            "Duplicate domain check",
            extra={"dedup": self.name, "sampled": len(keys), "duplicate_ratio": ratio},
        )
        return ratio >= DUPLICATE_DOMAIN_THRESHOLD

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __contains__(self, key: Hashable) -> bool:
        return self.is_seen(key)
