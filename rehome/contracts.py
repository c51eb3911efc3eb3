"""Collaborator contracts consumed by the search and migration code.

Storage, source and tracker access live outside this package. Everything that
may touch disk or network is a coroutine so callers never block a shared
event loop. Implementations: rehome.memory (in-process) and rehome.suwayomi.
"""

from typing import Any, BinaryIO, List, Optional, Protocol, Sequence

from .models import Chapter, ChapterUpdate, TrackRecord, Work, WorkUpdate


class ChapterRepository(Protocol):
    async def list_by_work(self, work_id: int) -> List[Chapter]: ...

    async def batch_update(self, updates: Sequence[ChapterUpdate]) -> None: ...


class CategoryRepository(Protocol):
    async def list_by_work(self, work_id: int) -> List[int]: ...

    async def set_for_work(self, work_id: int, category_ids: Sequence[int]) -> None: ...


class TrackRepository(Protocol):
    async def list_by_work(self, work_id: int) -> List[TrackRecord]: ...

    async def batch_upsert(self, records: Sequence[TrackRecord]) -> None: ...


class DownloadStore(Protocol):
    async def count_for(self, work: Work) -> int: ...

    async def delete_for(self, work: Work, source: Any) -> None: ...


class CoverStore(Protocol):
    async def has_custom_cover(self, work_id: int) -> bool: ...

    async def read_custom_cover(self, work_id: int) -> BinaryIO:
        """Open stream over the cover bytes; the caller closes it."""
        ...

    async def write_custom_cover(self, work_id: int, stream: BinaryIO) -> None: ...


class WorkRepository(Protocol):
    async def batch_update(self, updates: Sequence[WorkUpdate]) -> None: ...


class ChapterSource(Protocol):
    async def sync_chapters(self, work: Work) -> None:
        """Fetch the work's chapter list from its source and store it."""
        ...


class SourceCatalog(Protocol):
    def get(self, source_id: int) -> Optional[Any]: ...


class WorkResolver(Protocol):
    async def resolve(self, source_id: int, result: Any) -> Work:
        """Turn a raw search result into a stored Work, creating it if needed."""
        ...


class EnhancedTracker(Protocol):
    """Tracker that can derive tracking identity from source + work alone."""

    def accepts(self, source_id: int) -> bool: ...

    async def migrate_track(self, track: TrackRecord, target: Work) -> TrackRecord: ...
