"""Numbered citation ledger: deduplication, stable ids, usage counts and in-text marks.

Ids are assigned in strict first-seen order of normalized URLs, starting at 1,
and are never reused until clear(). Marks compress consecutive ids into ranges:

    [1-3, 5]   for ids 1, 2, 3, 5
    [7]        for id 7
"""

import logging
import re
import threading
from collections.abc import Iterable
from dataclasses import replace
from datetime import date
from urllib.parse import urlsplit

from research_council.models import Citation

logger = logging.getLogger(__name__)

# [3], [1-3, 5], [2,4]; en dash ranges are accepted as well
_MARK_RE = re.compile(r"\[(\d+(?:\s*[-–]\s*\d+)?(?:\s*,\s*\d+(?:\s*[-–]\s*\d+)?)*)\]")
_RANGE_RE = re.compile(r"\s*[-–]\s*")


def normalize_url(url: str) -> str:
    """Citation key: scheme://lowercase-host/path, query and fragment dropped."""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url.lower().strip()
    if not parts.scheme or not parts.hostname:
        return url.lower().strip()
    return f"{parts.scheme}://{parts.hostname.lower()}{parts.path or '/'}"


def compress_ids(ids: Iterable[int]) -> list[str]:
    """Sorted, deduplicated ids as range strings: [1, 2, 3, 5] -> ["1-3", "5"]."""
    ordered = sorted(set(ids))
    if not ordered:
        return []
    ranges: list[str] = []
    start = end = ordered[0]
    for value in ordered[1:]:
        if value == end + 1:
            end = value
            continue
        ranges.append(str(start) if start == end else f"{start}-{end}")
        start = end = value
    ranges.append(str(start) if start == end else f"{start}-{end}")
    return ranges


def parse_mark_body(body: str, upper: int | None = None) -> list[int]:
    """Expand the inside of a mark ("1-3, 5") into ids.

    With upper set, a range is expanded only up to upper; a bound beyond it is
    kept as a single id so callers can still report it.
    """
    ids: list[int] = []
    for piece in body.split(","):
        piece = piece.strip()
        if not piece:
            continue
        bounds = _RANGE_RE.split(piece)
        try:
            if len(bounds) == 2:
                low, high = int(bounds[0]), int(bounds[1])
                if upper is None or high <= upper:
                    ids.extend(range(low, high + 1))
                    continue
                ids.extend(range(low, upper + 1))
                if low > upper:
                    ids.append(low)
                ids.append(high)
            else:
                ids.append(int(piece))
        except ValueError:
            continue
    return ids


class CitationRegistry:
    """Session-scoped citation store.

    Mutations and reads go through one re-entrant lock so a registry shared by
    several coroutines or threads keeps the single-writer discipline.
    """

    def __init__(self) -> None:
        self._by_key: dict[str, Citation] = {}
        self._by_id: dict[int, Citation] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    def add(self, citation: Citation) -> int:
        key = normalize_url(citation.url)
        with self._lock:
            existing = self._by_key.get(key)
            if existing is not None:
                return existing.id  # type: ignore[return-value]

            stored = replace(
                citation,
                id=self._next_id,
                times_cited=0,
                access_date=citation.access_date or date.today().isoformat(),
            )
            self._next_id += 1
            self._by_key[key] = stored
            self._by_id[stored.id] = stored  # type: ignore[index]
        logger.debug("Added citation %d: %s", stored.id, stored.title)
        return stored.id  # type: ignore[return-value]

    def add_many(self, citations: Iterable[Citation]) -> list[int]:
        return [self.add(c) for c in citations]

    def record_usage(self, ids: Iterable[int]) -> None:
        """Increment usage for each id that resolves; unknown ids are ignored."""
        with self._lock:
            for citation_id in ids:
                citation = self._by_id.get(citation_id)
                if citation is not None:
                    citation.times_cited += 1

    def render_mark(self, ids: Iterable[int]) -> str:
        ranges = compress_ids(ids)
        return f"[{', '.join(ranges)}]" if ranges else ""

    def cite_and_mark(self, ids: Iterable[int]) -> str:
        """Record usage and render the mark for the same ids in one step."""
        ids = list(ids)
        with self._lock:
            self.record_usage(ids)
            return self.render_mark(ids)

    def scan_marks(self, text: str) -> list[int]:
        """Ids referenced by bracketed marks in text, first-seen order, no duplicates.

        Ranges are expanded only across known ids: [1-20000000] in a registry
        of 3 citations yields 1, 2, 3 and the unknown bound 20000000.
        """
        upper = self.max_id
        seen: dict[int, None] = {}
        for match in _MARK_RE.finditer(text):
            for citation_id in parse_mark_body(match.group(1), upper):
                seen.setdefault(citation_id, None)
        return list(seen)

    def mark_text(self, text: str, citations: Iterable[Citation]) -> tuple[str, list[int]]:
        """Register citations and append their mark to text. Usage is not recorded."""
        ids = self.add_many(citations)
        if not ids:
            return text, ids
        return f"{text.strip()} {self.render_mark(ids)}", ids

    def get_by_id(self, citation_id: int) -> Citation | None:
        with self._lock:
            return self._by_id.get(citation_id)

    def get_all(self) -> list[Citation]:
        with self._lock:
            return [self._by_id[i] for i in sorted(self._by_id)]

    def get_cited(self) -> list[Citation]:
        return [c for c in self.get_all() if c.times_cited > 0]

    def get_uncited(self) -> list[Citation]:
        return [c for c in self.get_all() if c.times_cited == 0]

    def stats(self) -> dict[str, int]:
        all_citations = self.get_all()
        cited = sum(1 for c in all_citations if c.times_cited > 0)
        return {"total": len(all_citations), "cited": cited, "uncited": len(all_citations) - cited}

    @property
    def max_id(self) -> int:
        with self._lock:
            return self._next_id - 1

    def clear(self) -> None:
        with self._lock:
            self._by_key.clear()
            self._by_id.clear()
            self._next_id = 1
        logger.info("All citations cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
