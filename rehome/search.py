"""Fuzzy candidate search across query variants of a title.

Regular mode runs the raw title as a single query. Deep mode normalizes the
title, plans several shorter queries, runs them concurrently and keeps the
best-scoring result over all of them. Results are compared against the title
with normalized Levenshtein similarity and must clear a threshold.
"""

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence

from .errors import NoCandidate, SearchFailure
from .models import SearchCandidate
from .titles import build_search_queries, normalize_title, title_similarity

logger = logging.getLogger(__name__)

SearchFn = Callable[[str], Awaitable[List[Any]]]

DEFAULT_THRESHOLD = 0.4


class SearchMode(enum.Enum):
    REGULAR = "regular"
    DEEP = "deep"


def result_title(item: Any) -> str:
    """Title of a raw search result; payload shapes vary between servers and forks."""
    if isinstance(item, Mapping):
        return str(item.get("title") or item.get("name") or item.get("label") or "")
    return str(getattr(item, "title", "") or "")


def _as_is(title: str) -> str:
    return title


class CandidateSearchEngine:
    def __init__(
        self,
        extra_query: Optional[str] = None,
        threshold: float = DEFAULT_THRESHOLD,
        sole_result_shortcut: bool = True,
        title_getter: Callable[[Any], str] = result_title,
    ):
        self.extra_query = (extra_query or "").strip() or None
        self.threshold = threshold
        # In regular mode a lone result is accepted with score 1.0 without
        # comparing titles, so it bypasses the threshold.
        self.sole_result_shortcut = sole_result_shortcut
        self.title_getter = title_getter

    async def search(
        self,
        title: str,
        search_fn: SearchFn,
        mode: SearchMode = SearchMode.REGULAR,
        threshold: Optional[float] = None,
    ) -> Optional[SearchCandidate]:
        """Return the best candidate at or above the threshold, or None.

        A failing query counts as an empty result set. Cancellation is not
        caught: it cancels every outstanding query and propagates.
        """
        threshold = self.threshold if threshold is None else threshold
        if mode is SearchMode.DEEP:
            reference = normalize_title(title)
            queries = build_search_queries(reference, self.extra_query)
            clean = normalize_title
        else:
            reference = title or ""
            queries = [self._with_extra(reference)] if reference.strip() else []
            clean = _as_is
        if not queries:
            logger.debug("No search queries for title %r", title)
            return None

        batches = await asyncio.gather(*(self._run_query(search_fn, q) for q in queries))
        return self._pick_best(reference, queries, batches, threshold, clean, mode)

    async def regular_search(self, title: str, search_fn: SearchFn) -> Optional[SearchCandidate]:
        return await self.search(title, search_fn, SearchMode.REGULAR)

    async def deep_search(self, title: str, search_fn: SearchFn) -> Optional[SearchCandidate]:
        return await self.search(title, search_fn, SearchMode.DEEP)

    async def require(
        self,
        title: str,
        search_fn: SearchFn,
        mode: SearchMode = SearchMode.REGULAR,
        threshold: Optional[float] = None,
    ) -> SearchCandidate:
        """Like search(), but raises NoCandidate instead of returning None."""
        candidate = await self.search(title, search_fn, mode, threshold)
        if candidate is None:
            raise NoCandidate(title, self.threshold if threshold is None else threshold)
        return candidate

    def _with_extra(self, query: str) -> str:
        return f"{query} {self.extra_query}" if self.extra_query else query

    async def _run_query(self, search_fn: SearchFn, query: str) -> List[Any]:
        try:
            results = await search_fn(query)
        except Exception as e:
            logger.warning("%s", SearchFailure(query, e))
            return []
        return list(results or [])

    def _pick_best(
        self,
        reference: str,
        queries: Sequence[str],
        batches: Sequence[List[Any]],
        threshold: float,
        clean: Callable[[str], str],
        mode: SearchMode = SearchMode.REGULAR,
    ) -> Optional[SearchCandidate]:
        total = sum(len(b) for b in batches)
        # deep search always scores, even when the plan has a single query
        if self.sole_result_shortcut and mode is SearchMode.REGULAR and total <= 1:
            if total == 0:
                return None
            item = batches[0][0]
            logger.warning(
                "Accepting sole result %r for %r without a similarity check",
                self.title_getter(item), reference,
            )
            return SearchCandidate(result=item, score=1.0, query=queries[0])

        # Walk queries in plan order so ties resolve the same way every run
        best: Optional[SearchCandidate] = None
        for query, results in zip(queries, batches):
            for item in results:
                score = title_similarity(reference, clean(self.title_getter(item)))
                if score < threshold:
                    continue
                if best is None or score > best.score:
                    best = SearchCandidate(result=item, score=score, query=query)
        if best is None:
            logger.debug("No result for %r cleared threshold %.2f (%d results)", reference, threshold, total)
        return best
