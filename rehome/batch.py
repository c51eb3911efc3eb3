"""Find replacements for many works across target sources, then migrate them."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Sequence

from .chapters import chapter_info
from .contracts import ChapterRepository, ChapterSource, WorkResolver
from .migrate import MigrationReport, MigrationStateTransfer
from .models import MigrationFlag, Work
from .search import CandidateSearchEngine, SearchFn, SearchMode

logger = logging.getLogger(__name__)

NOT_FOUND = "not-found"
MATCHED = "matched"
MIGRATED = "migrated"
PARTIAL = "partial"
FAILED = "failed"


@dataclass
class BatchItem:
    work: Work
    chapter_count: int = 0
    latest_chapter: Optional[float] = None
    match: Optional[Work] = None
    match_chapter_count: int = 0
    match_latest_chapter: Optional[float] = None
    score: Optional[float] = None
    source_id: Optional[int] = None
    report: Optional[MigrationReport] = None
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.error:
            return FAILED
        if self.report is not None:
            return MIGRATED if self.report.ok else PARTIAL
        if self.match is not None:
            return MATCHED
        return NOT_FOUND


@dataclass
class _Match:
    work: Work
    score: float
    chapter_count: int
    latest_chapter: Optional[float]
    source_id: int


def _result_url(result: Any) -> str:
    if isinstance(result, Mapping):
        return str(result.get("url") or "")
    return str(getattr(result, "url", "") or "")


class MigrationBatch:
    def __init__(
        self,
        engine: CandidateSearchEngine,
        transfer: MigrationStateTransfer,
        resolver: WorkResolver,
        chapters: ChapterRepository,
        chapter_source: ChapterSource,
        search_for: Callable[[int], SearchFn],
        deep_search: bool = False,
        prioritize_by_chapters: bool = False,
        hide_unmatched: bool = False,
        hide_without_updates: bool = False,
        source_concurrency: int = 5,
    ):
        self.engine = engine
        self.transfer = transfer
        self.resolver = resolver
        self.chapters = chapters
        self.chapter_source = chapter_source
        self.search_for = search_for
        self.mode = SearchMode.DEEP if deep_search else SearchMode.REGULAR
        self.prioritize_by_chapters = prioritize_by_chapters
        self.hide_unmatched = hide_unmatched
        self.hide_without_updates = hide_without_updates
        self.source_concurrency = max(1, source_concurrency)

    async def find_matches(
        self,
        works: Sequence[Work],
        target_source_ids: Sequence[int],
        progress: Optional[Callable[[int, int, BatchItem], None]] = None,
    ) -> List[BatchItem]:
        """Search each work on the target sources, in order.

        Sequential mode keeps the first source that yields a match. With
        prioritize_by_chapters every source is searched and the match with the
        highest latest chapter wins.
        """
        items: List[BatchItem] = []
        total = len(works)
        for idx, work in enumerate(works, 1):
            count, latest = chapter_info(await self.chapters.list_by_work(work.id))
            item = BatchItem(work=work, chapter_count=count, latest_chapter=latest)
            match = await self._find_match(work, target_source_ids)
            if match is not None:
                item.match = match.work
                item.score = match.score
                item.source_id = match.source_id
                item.match_chapter_count = match.chapter_count
                item.match_latest_chapter = match.latest_chapter
            if progress:
                progress(idx, total, item)
            if match is None and self.hide_unmatched:
                logger.info("Hiding unmatched %r", work.title)
                continue
            if (
                match is not None
                and self.hide_without_updates
                and (match.latest_chapter or 0.0) <= (latest or 0.0)
            ):
                logger.info("Hiding %r: match has no newer chapters", work.title)
                continue
            items.append(item)
        return items

    async def migrate_all(
        self,
        items: Sequence[BatchItem],
        replace: bool,
        flags: Optional[MigrationFlag] = None,
        progress: Optional[Callable[[int, int, BatchItem], None]] = None,
    ) -> List[BatchItem]:
        """Migrate every matched item. flags=None uses each work's applicable flags."""
        matched = [i for i in items if i.match is not None]
        for done, item in enumerate(matched, 1):
            try:
                item_flags = flags if flags is not None else await self.transfer.applicable_flags(item.work)
                item.report = await self.transfer.migrate(item.work, item.match, replace, item_flags)
            except Exception as e:
                logger.warning("Migration of %r failed: %s", item.work.title, e, exc_info=True)
                item.error = str(e)
            if progress:
                progress(done, len(matched), item)
        return list(items)

    async def _find_match(self, work: Work, source_ids: Sequence[int]) -> Optional[_Match]:
        if not self.prioritize_by_chapters:
            for sid in source_ids:
                match = await self._search_source(work, sid)
                if match is not None:
                    return match
            return None

        semaphore = asyncio.Semaphore(self.source_concurrency)

        async def guarded(sid: int) -> Optional[_Match]:
            async with semaphore:
                return await self._search_source(work, sid)

        results = await asyncio.gather(*(guarded(sid) for sid in source_ids))
        found = [m for m in results if m is not None and m.chapter_count > 0]
        # max() keeps the first of equal keys, i.e. target source order
        return max(found, key=lambda m: m.latest_chapter or 0.0, default=None)

    async def _search_source(self, work: Work, source_id: int) -> Optional[_Match]:
        try:
            candidate = await self.engine.search(work.title, self.search_for(source_id), self.mode)
            if candidate is None:
                return None
            if source_id == work.source_id and _result_url(candidate.result) == work.url:
                return None
            target = await self.resolver.resolve(source_id, candidate.result)
            if target.key == work.key:
                return None
            try:
                await self.chapter_source.sync_chapters(target)
            except Exception as e:
                logger.warning("Chapter sync for %r on source %s failed: %s", target.title, source_id, e)
            count, latest = chapter_info(await self.chapters.list_by_work(target.id))
            return _Match(work=target, score=candidate.score, chapter_count=count, latest_chapter=latest, source_id=source_id)
        except Exception as e:
            logger.warning("Searching source %s for %r failed: %s", source_id, work.title, e)
            return None
