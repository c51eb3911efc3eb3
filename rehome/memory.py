"""In-process implementations of every collaborator contract.

Backs the test suite and dry-run previews. One InMemoryLibrary holds all
tables; the contract objects are exposed as attributes so it can be handed to
MigrationStateTransfer.for_library().
"""

import dataclasses
import io
import itertools
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Mapping, Optional, Sequence

from .models import Chapter, ChapterUpdate, TrackRecord, Work, WorkUpdate


@dataclass
class InMemorySource:
    """A catalogue source whose search matches every word of the query against entry titles."""
    id: int
    name: str
    entries: List[Dict[str, Any]] = field(default_factory=list)
    failing: bool = False
    queries: List[str] = field(default_factory=list)

    async def search(self, query: str) -> List[Dict[str, Any]]:
        self.queries.append(query)
        if self.failing:
            raise ConnectionError(f"{self.name} is unreachable")
        words = query.lower().split()
        return [dict(e) for e in self.entries if all(w in str(e.get("title", "")).lower() for w in words)]


class _Works:
    def __init__(self, lib: "InMemoryLibrary"):
        self._lib = lib

    async def batch_update(self, updates: Sequence[WorkUpdate]) -> None:
        self._lib.work_update_batches.append(list(updates))
        for u in updates:
            work = self._lib.work_table[u.id]
            changes = {k: v for k, v in dataclasses.asdict(u).items() if k != "id" and v is not None}
            self._lib.work_table[u.id] = dataclasses.replace(work, **changes)


class _Chapters:
    def __init__(self, lib: "InMemoryLibrary"):
        self._lib = lib

    async def list_by_work(self, work_id: int) -> List[Chapter]:
        chapters = [c for c in self._lib.chapter_table.values() if c.work_id == work_id]
        return sorted(chapters, key=lambda c: c.source_order)

    async def batch_update(self, updates: Sequence[ChapterUpdate]) -> None:
        self._lib.chapter_update_batches.append(list(updates))
        for u in updates:
            chapter = self._lib.chapter_table[u.id]
            changes = {k: v for k, v in dataclasses.asdict(u).items() if k != "id" and v is not None}
            self._lib.chapter_table[u.id] = dataclasses.replace(chapter, **changes)


class _Categories:
    def __init__(self, lib: "InMemoryLibrary"):
        self._lib = lib

    async def list_by_work(self, work_id: int) -> List[int]:
        return list(self._lib.work_table[work_id].category_ids)

    async def set_for_work(self, work_id: int, category_ids: Sequence[int]) -> None:
        work = self._lib.work_table[work_id]
        self._lib.work_table[work_id] = dataclasses.replace(work, category_ids=list(category_ids))


class _Tracks:
    def __init__(self, lib: "InMemoryLibrary"):
        self._lib = lib

    async def list_by_work(self, work_id: int) -> List[TrackRecord]:
        return [t for t in self._lib.track_table.values() if t.work_id == work_id]

    async def batch_upsert(self, records: Sequence[TrackRecord]) -> None:
        for record in records:
            if record.id is None:
                existing = next(
                    (t for t in self._lib.track_table.values()
                     if t.work_id == record.work_id and t.service_id == record.service_id),
                    None,
                )
                record = dataclasses.replace(record, id=existing.id if existing else next(self._lib._ids))
            self._lib.track_table[record.id] = record


class _Downloads:
    def __init__(self, lib: "InMemoryLibrary"):
        self._lib = lib

    async def count_for(self, work: Work) -> int:
        return sum(1 for c in self._lib.chapter_table.values() if c.work_id == work.id and c.downloaded)

    async def delete_for(self, work: Work, source: Any) -> None:
        for cid, c in list(self._lib.chapter_table.items()):
            if c.work_id == work.id and c.downloaded:
                self._lib.chapter_table[cid] = dataclasses.replace(c, downloaded=False)
        self._lib.deleted_downloads.append(work.id)


class _ChapterSource:
    def __init__(self, lib: "InMemoryLibrary"):
        self._lib = lib

    async def sync_chapters(self, work: Work) -> None:
        if work.source_id not in self._lib.source_table:
            raise LookupError(f"Source {work.source_id} is not installed")
        existing = {c.url: c for c in self._lib.chapter_table.values() if c.work_id == work.id}
        for order, remote in enumerate(self._lib.remote_chapters.get(work.id, [])):
            local = existing.get(remote.url)
            if local is None:
                cid = next(self._lib._ids)
                self._lib.chapter_table[cid] = dataclasses.replace(remote, id=cid, work_id=work.id, source_order=order)
            else:
                self._lib.chapter_table[local.id] = dataclasses.replace(
                    local, name=remote.name, recognized_number=remote.recognized_number, source_order=order,
                )


class _Sources:
    def __init__(self, lib: "InMemoryLibrary"):
        self._lib = lib

    def get(self, source_id: int) -> Optional[InMemorySource]:
        return self._lib.source_table.get(source_id)


class _Resolver:
    def __init__(self, lib: "InMemoryLibrary"):
        self._lib = lib

    async def resolve(self, source_id: int, result: Mapping[str, Any]) -> Work:
        url = str(result.get("url") or "")
        for work in self._lib.work_table.values():
            if work.source_id == source_id and work.url == url:
                return work
        work = Work(
            id=next(self._lib._ids),
            source_id=source_id,
            title=str(result.get("title") or ""),
            url=url,
            thumbnail_url=result.get("thumbnailUrl"),
        )
        self._lib.work_table[work.id] = work
        return work


class InMemoryLibrary:
    def __init__(self):
        self._ids = itertools.count(1000)
        self.work_table: Dict[int, Work] = {}
        self.chapter_table: Dict[int, Chapter] = {}
        self.track_table: Dict[int, TrackRecord] = {}
        self.source_table: Dict[int, InMemorySource] = {}
        # Chapter lists as the sources would return them, keyed by work id
        self.remote_chapters: Dict[int, List[Chapter]] = {}
        self.work_update_batches: List[List[WorkUpdate]] = []
        self.chapter_update_batches: List[List[ChapterUpdate]] = []
        self.deleted_downloads: List[int] = []

        self.works = _Works(self)
        self.chapters = _Chapters(self)
        self.categories = _Categories(self)
        self.tracks = _Tracks(self)
        self.downloads = _Downloads(self)
        self.chapter_source = _ChapterSource(self)
        self.sources = _Sources(self)
        self.resolver = _Resolver(self)

    def add_source(self, source: InMemorySource) -> InMemorySource:
        self.source_table[source.id] = source
        return source

    def add_work(self, work: Work) -> Work:
        self.work_table[work.id] = work
        return work

    def add_chapters(self, chapters: Sequence[Chapter]) -> None:
        for c in chapters:
            self.chapter_table[c.id] = c

    def add_track(self, track: TrackRecord) -> TrackRecord:
        if track.id is None:
            track = dataclasses.replace(track, id=next(self._ids))
        self.track_table[track.id] = track
        return track

    def work(self, work_id: int) -> Work:
        return self.work_table[work_id]

    def chapters_of(self, work_id: int) -> List[Chapter]:
        return sorted((c for c in self.chapter_table.values() if c.work_id == work_id), key=lambda c: c.source_order)

    def searcher(self, source_id: int):
        return self.source_table[source_id].search


class InMemoryCoverStore:
    def __init__(self, covers: Optional[Dict[int, bytes]] = None):
        self.covers: Dict[int, bytes] = dict(covers or {})

    async def has_custom_cover(self, work_id: int) -> bool:
        return work_id in self.covers

    async def read_custom_cover(self, work_id: int) -> BinaryIO:
        return io.BytesIO(self.covers[work_id])

    async def write_custom_cover(self, work_id: int, stream: BinaryIO) -> None:
        self.covers[work_id] = stream.read()
