import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .chapters import build_correspondence
from .contracts import (
    CategoryRepository,
    ChapterRepository,
    ChapterSource,
    CoverStore,
    DownloadStore,
    EnhancedTracker,
    SourceCatalog,
    TrackRepository,
    WorkRepository,
)
from .errors import SameWorkError, StepFailure
from .models import MigrationFlag, TrackRecord, Work, WorkUpdate

logger = logging.getLogger(__name__)

OK = "ok"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class StepResult:
    name: str
    status: str
    detail: str = ""
    error: Optional[StepFailure] = None

    @property
    def failed(self) -> bool:
        return self.status == FAILED


@dataclass
class MigrationReport:
    current: Work
    target: Work
    replace: bool
    flags: MigrationFlag
    steps: List[StepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(s.failed for s in self.steps)

    @property
    def failed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.failed]

    def step(self, name: str) -> Optional[StepResult]:
        for s in self.steps:
            if s.name == name:
                return s
        return None


class _Skip(str):
    """Step detail meaning the step did not apply."""


def _now_millis() -> int:
    return int(time.time() * 1000)


async def compute_applicable_flags(work: Work, covers: CoverStore, downloads: DownloadStore) -> MigrationFlag:
    """Flags that make sense for this work; the UI offers only these."""
    flags = MigrationFlag.CHAPTER
    if await covers.has_custom_cover(work.id):
        flags |= MigrationFlag.CUSTOM_COVER
    if (work.notes or "").strip():
        flags |= MigrationFlag.NOTES
    if await downloads.count_for(work) > 0:
        flags |= MigrationFlag.REMOVE_DOWNLOAD
    return flags


class MigrationStateTransfer:
    """Moves user state from one work to an equivalent work on another source.

    Each step runs best-effort: a failing step is logged and recorded in the
    returned report and the next step still runs. Cancellation propagates.
    Holds no state between calls.
    """

    def __init__(
        self,
        chapter_source: ChapterSource,
        chapters: ChapterRepository,
        categories: CategoryRepository,
        tracks: TrackRepository,
        downloads: DownloadStore,
        covers: CoverStore,
        works: WorkRepository,
        sources: SourceCatalog,
        enhanced_trackers: Optional[Mapping[int, EnhancedTracker]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.chapter_source = chapter_source
        self.chapters = chapters
        self.categories = categories
        self.tracks = tracks
        self.downloads = downloads
        self.covers = covers
        self.works = works
        self.sources = sources
        self.enhanced_trackers: Dict[int, EnhancedTracker] = dict(enhanced_trackers or {})
        self.clock = clock or _now_millis

    @classmethod
    def for_library(cls, library: Any, covers: CoverStore, **kwargs: Any) -> "MigrationStateTransfer":
        """Build from an object exposing the repositories as attributes (see rehome.memory / rehome.suwayomi)."""
        return cls(
            chapter_source=library.chapter_source,
            chapters=library.chapters,
            categories=library.categories,
            tracks=library.tracks,
            downloads=library.downloads,
            covers=covers,
            works=library.works,
            sources=library.sources,
            **kwargs,
        )

    async def applicable_flags(self, work: Work) -> MigrationFlag:
        return await compute_applicable_flags(work, self.covers, self.downloads)

    async def migrate(
        self,
        current: Work,
        target: Work,
        replace: bool,
        flags: MigrationFlag = MigrationFlag(0),
    ) -> MigrationReport:
        report = MigrationReport(current=current, target=target, replace=replace, flags=flags)
        if current.key == target.key:
            failure = StepFailure("finalize", SameWorkError(
                "Cannot migrate a work onto itself", {"source_id": current.source_id, "id": current.id},
            ))
            logger.warning("%s for %r", failure, current.title)
            report.steps.append(StepResult(name="finalize", status=FAILED, detail="same work", error=failure))
            return report

        logger.info(
            "Migrating %r (%s/%s) -> %r (%s/%s) replace=%s flags=%s",
            current.title, current.source_id, current.id,
            target.title, target.source_id, target.id,
            replace, ",".join(flags.names()) or "-",
        )

        await self._run(report, "sync_chapters", lambda: self._sync_chapters(target))

        if MigrationFlag.CHAPTER in flags:
            await self._run(report, "chapters", lambda: self._migrate_chapters(current, target))
            await self._run(report, "categories", lambda: self._migrate_categories(current, target))
        else:
            self._skip(report, "chapters", "flag not set")
            self._skip(report, "categories", "flag not set")

        await self._run(report, "tracks", lambda: self._migrate_tracks(current, target))

        if MigrationFlag.REMOVE_DOWNLOAD in flags:
            await self._run(report, "downloads", lambda: self._remove_downloads(current))
        else:
            self._skip(report, "downloads", "flag not set")

        if MigrationFlag.CUSTOM_COVER in flags:
            await self._run(report, "cover", lambda: self._copy_cover(current, target))
        else:
            self._skip(report, "cover", "flag not set")

        await self._run(report, "finalize", lambda: self._finalize(current, target, replace, flags))

        if report.ok:
            logger.info("Migrated %r -> %r", current.title, target.title)
        else:
            logger.warning("Migrated %r -> %r with failed steps: %s", current.title, target.title, ", ".join(report.failed_steps))
        return report

    # --- step runner ---

    async def _run(self, report: MigrationReport, name: str, action: Callable[[], Awaitable[Optional[str]]]) -> None:
        try:
            detail = await action()
        except Exception as e:
            failure = StepFailure(name, e)
            logger.warning("%s for %r", failure, report.current.title, exc_info=True)
            report.steps.append(StepResult(name=name, status=FAILED, error=failure))
            return
        if isinstance(detail, _Skip):
            self._skip(report, name, detail)
            return
        report.steps.append(StepResult(name=name, status=OK, detail=detail or ""))

    @staticmethod
    def _skip(report: MigrationReport, name: str, reason: str) -> None:
        logger.debug("Step %s skipped: %s", name, reason)
        report.steps.append(StepResult(name=name, status=SKIPPED, detail=reason))

    # --- steps ---

    async def _sync_chapters(self, target: Work) -> Optional[str]:
        await self.chapter_source.sync_chapters(target)
        return None

    async def _migrate_chapters(self, current: Work, target: Work) -> str:
        prev_chapters = await self.chapters.list_by_work(current.id)
        new_chapters = await self.chapters.list_by_work(target.id)
        corr = build_correspondence(prev_chapters, new_chapters)
        if corr.updates:
            await self.chapters.batch_update(corr.updates)
        return f"{len(corr.updates)} chapters updated (max read {corr.max_read_number})"

    async def _migrate_categories(self, current: Work, target: Work) -> str:
        category_ids = await self.categories.list_by_work(current.id)
        await self.categories.set_for_work(target.id, category_ids)
        return f"{len(category_ids)} categories"

    async def _migrate_tracks(self, current: Work, target: Work) -> str:
        records = await self.tracks.list_by_work(current.id)
        if not records:
            return _Skip("no tracks")
        migrated: List[TrackRecord] = []
        for record in records:
            # storage upserts on (work, service); the source entry keeps its own link
            updated = dataclasses.replace(record, id=None, work_id=target.id)
            tracker = self.enhanced_trackers.get(record.service_id)
            if tracker is not None and tracker.accepts(target.source_id):
                updated = await tracker.migrate_track(updated, target)
            migrated.append(updated)
        await self.tracks.batch_upsert(migrated)
        return f"{len(migrated)} tracks"

    async def _remove_downloads(self, current: Work) -> str:
        source = self.sources.get(current.source_id)
        if source is None:
            return _Skip(f"source {current.source_id} not available")
        await self.downloads.delete_for(current, source)
        return "downloads removed"

    async def _copy_cover(self, current: Work, target: Work) -> str:
        if not await self.covers.has_custom_cover(current.id):
            return _Skip("no custom cover")
        stream = await self.covers.read_custom_cover(current.id)
        with stream:
            await self.covers.write_custom_cover(target.id, stream)
        return "cover copied"

    async def _finalize(self, current: Work, target: Work, replace: bool, flags: MigrationFlag) -> str:
        updates = [
            WorkUpdate(
                id=target.id,
                favorite=True,
                chapter_flags=current.chapter_flags,
                viewer_flags=current.viewer_flags,
                date_added=current.date_added if replace else self.clock(),
                notes=current.notes if MigrationFlag.NOTES in flags else None,
            ),
        ]
        if replace:
            updates.append(WorkUpdate(id=current.id, favorite=False, date_added=0))
        await self.works.batch_update(updates)
        return "replaced" if replace else "copied"
