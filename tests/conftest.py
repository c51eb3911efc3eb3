import json
from pathlib import Path

import pytest
import responses

from rehome.memory import InMemoryCoverStore, InMemoryLibrary, InMemorySource
from rehome.migrate import MigrationStateTransfer
from rehome.models import Chapter, TrackRecord, Work


@pytest.fixture(scope="session")
def fixtures_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures"


@pytest.fixture(scope="session")
def sample_chapters(fixtures_dir: Path) -> list:
    path = fixtures_dir / "suwayomi" / "sample_chapters.json"
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


@pytest.fixture(scope="session")
def sample_manga(fixtures_dir: Path) -> dict:
    path = fixtures_dir / "suwayomi" / "sample_manga.json"
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


@pytest.fixture
def responses_mock():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def library() -> InMemoryLibrary:
    """Work 1 on source 1 (read up to chapter 2) and its counterpart, work 2, on source 2."""
    lib = InMemoryLibrary()
    lib.add_source(InMemorySource(1, "OldSource"))
    lib.add_source(InMemorySource(2, "NewSource", entries=[
        {"title": "Blue Lock", "url": "/blue-lock"},
        {"title": "Blue Period", "url": "/blue-period"},
    ]))
    lib.add_work(Work(
        id=1, source_id=1, title="Blue Lock", url="/m/1", favorite=True, category_ids=[3, 4],
        chapter_flags=6, viewer_flags=2, notes="re-read arc 2", date_added=1_600_000_000_000,
    ))
    lib.add_chapters([
        Chapter(id=101, work_id=1, recognized_number=1.0, read=True, date_fetch=10, url="/c/1", source_order=0, downloaded=True),
        Chapter(id=102, work_id=1, recognized_number=2.0, read=True, bookmark=True, date_fetch=20, url="/c/2", source_order=1),
        Chapter(id=103, work_id=1, recognized_number=3.0, date_fetch=30, url="/c/3", source_order=2),
    ])
    lib.add_work(Work(id=2, source_id=2, title="Blue Lock", url="/blue-lock"))
    lib.remote_chapters[2] = [
        Chapter(id=0, work_id=2, recognized_number=n, url=f"/b/{int(n)}", name=f"Chapter {int(n)}")
        for n in (1.0, 2.0, 3.0, 4.0)
    ]
    lib.add_track(TrackRecord(work_id=1, service_id=7, remote_id=555, title="Blue Lock", last_chapter_read=2.0))
    return lib


@pytest.fixture
def covers() -> InMemoryCoverStore:
    return InMemoryCoverStore({1: b"\x89PNG custom"})


@pytest.fixture
def transfer(library: InMemoryLibrary, covers: InMemoryCoverStore) -> MigrationStateTransfer:
    return MigrationStateTransfer.for_library(library, covers, clock=lambda: 1_700_000_000_000)
