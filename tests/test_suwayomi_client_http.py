from __future__ import annotations

import json

import pytest
import responses
from responses import matchers

from rehome.models import ChapterUpdate, TrackRecord, WorkUpdate
from rehome.suwayomi import (
    META_NOTES,
    SuwayomiClient,
    SuwayomiLibrary,
    find_sources,
    work_from_manga,
)

BASE = "http://example.com"


def make_library() -> SuwayomiLibrary:
    return SuwayomiLibrary(SuwayomiClient(base_url=BASE), sources=[{"id": "2", "name": "NewSource"}])


def test_remove_from_library_fallback_uses_get(responses_mock: responses.RequestsMock):
    client = SuwayomiClient(base_url=BASE)
    responses_mock.add(responses.DELETE, f"{BASE}/api/v1/manga/5/library", status=404)
    responses_mock.add(responses.GET, f"{BASE}/api/v1/manga/5/library/remove", status=200)
    assert client.remove_from_library(5) is True


def test_remove_from_library_returns_false_when_all_paths_fail(responses_mock: responses.RequestsMock):
    client = SuwayomiClient(base_url=BASE)
    responses_mock.add(responses.DELETE, f"{BASE}/api/v1/manga/5/library", status=404)
    responses_mock.add(responses.GET, f"{BASE}/api/v1/manga/5/library/remove", status=500)
    assert client.remove_from_library(5) is False


def test_graphql_fallbacks_to_secondary_endpoint(responses_mock: responses.RequestsMock):
    client = SuwayomiClient(base_url=BASE)
    responses_mock.add(responses.POST, f"{BASE}/api/graphql", status=500)
    responses_mock.add(responses.POST, f"{BASE}/graphql", json={"data": {"ok": True}}, status=200)
    assert client.graphql("query { ok }") == {"data": {"ok": True}}


def test_bearer_token_is_sent(responses_mock: responses.RequestsMock):
    client = SuwayomiClient(base_url=BASE, auth_mode="bearer", token="abc")
    client._auth()
    responses_mock.add(
        responses.GET,
        f"{BASE}/api/v1/source/list",
        json=[{"id": "2", "name": "NewSource"}],
        match=[matchers.header_matcher({"Authorization": "Bearer abc"})],
    )
    assert client.get_sources() == [{"id": "2", "name": "NewSource"}]


def test_get_chapters_requests_online_fetch(responses_mock: responses.RequestsMock, sample_chapters: list):
    client = SuwayomiClient(base_url=BASE)
    responses_mock.add(
        responses.GET,
        f"{BASE}/api/v1/manga/42/chapters",
        json=sample_chapters,
        match=[matchers.query_param_matcher({"onlineFetch": "true"})],
    )
    assert [c["id"] for c in client.get_chapters(42, online_fetch=True)] == [501, 502, 503]


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"mangaList": [{"id": 1}], "hasNextPage": False}, [{"id": 1}]),
        ({"data": {"items": [{"id": 2}]}}, [{"id": 2}]),
        ([{"id": 3}, "junk"], [{"id": 3}]),
        (None, []),
    ],
)
def test_normalize_search_items(payload, expected):
    assert SuwayomiClient.normalize_search_items(payload) == expected


def test_work_from_manga(sample_manga: dict):
    work = work_from_manga(sample_manga)
    assert work.id == 42
    assert work.source_id == 2499283573021220255
    assert work.favorite is True
    assert work.notes == "re-read arc 2"
    assert work.chapter_flags == 6
    assert work.date_added == 1_600_000_000_000


@pytest.mark.asyncio
async def test_chapter_listing_maps_unrecognized_sentinel(responses_mock: responses.RequestsMock, sample_chapters: list):
    responses_mock.add(responses.GET, f"{BASE}/api/v1/manga/42/chapters", json=sample_chapters)
    chapters = await make_library().chapters.list_by_work(42)
    assert [c.recognized_number for c in chapters] == [1.0, 2.0, None]
    assert [c.source_order for c in chapters] == [1, 2, 3]
    assert chapters[0].read and chapters[0].downloaded
    assert chapters[1].bookmark and chapters[1].last_page_read == 3


@pytest.mark.asyncio
async def test_chapter_updates_grouped_by_change(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.POST, f"{BASE}/api/v1/chapter/batch", status=200)
    await make_library().chapters.batch_update([
        ChapterUpdate(id=1, read=True),
        ChapterUpdate(id=2, read=True, date_fetch=5),
        ChapterUpdate(id=3, read=True, bookmark=True),
        ChapterUpdate(id=4, date_fetch=7),
    ])
    bodies = [json.loads(c.request.body) for c in responses_mock.calls]
    assert bodies == [
        {"chapterIds": [1, 2], "change": {"isRead": True}},
        {"chapterIds": [3], "change": {"isBookmarked": True, "isRead": True}},
    ]


@pytest.mark.asyncio
async def test_work_updates_map_to_library_and_meta(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, f"{BASE}/api/v1/manga/2/library", status=200)
    responses_mock.add(responses.DELETE, f"{BASE}/api/v1/manga/1/library", status=200)
    responses_mock.add(responses.PATCH, f"{BASE}/api/v1/manga/2/meta", status=200)
    responses_mock.add(responses.PATCH, f"{BASE}/api/v1/manga/1/meta", status=200)
    await make_library().works.batch_update([
        WorkUpdate(id=2, favorite=True, notes="re-read arc 2"),
        WorkUpdate(id=1, favorite=False, date_added=0),
    ])
    calls = [(c.request.method, c.request.url) for c in responses_mock.calls]
    assert calls == [
        ("GET", f"{BASE}/api/v1/manga/2/library"),
        ("PATCH", f"{BASE}/api/v1/manga/2/meta"),
        ("DELETE", f"{BASE}/api/v1/manga/1/library"),
        ("PATCH", f"{BASE}/api/v1/manga/1/meta"),
    ]
    assert f"key={META_NOTES}" in responses_mock.calls[1].request.body


@pytest.mark.asyncio
async def test_failed_library_add_raises(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, f"{BASE}/api/v1/manga/2/library", status=500)
    with pytest.raises(RuntimeError, match="HTTP 500"):
        await make_library().works.batch_update([WorkUpdate(id=2, favorite=True)])


@pytest.mark.asyncio
async def test_categories_are_diffed(responses_mock: responses.RequestsMock):
    responses_mock.add(
        responses.GET,
        f"{BASE}/api/v1/manga/2/category",
        json=[{"id": 0, "name": "Default"}, {"id": 1, "name": "Reading"}, {"id": 5, "name": "Action"}],
    )
    responses_mock.add(responses.GET, f"{BASE}/api/v1/manga/2/category/7", status=200)
    responses_mock.add(responses.DELETE, f"{BASE}/api/v1/manga/2/category/1", status=200)
    lib = make_library()
    assert await lib.categories.list_by_work(2) == [1, 5]
    await lib.categories.set_for_work(2, [5, 7])
    calls = [(c.request.method, c.request.url) for c in responses_mock.calls[-2:]]
    assert calls == [
        ("GET", f"{BASE}/api/v1/manga/2/category/7"),
        ("DELETE", f"{BASE}/api/v1/manga/2/category/1"),
    ]


@pytest.mark.asyncio
async def test_downloads_counted_and_deleted_by_index(responses_mock: responses.RequestsMock, sample_chapters: list):
    responses_mock.add(responses.GET, f"{BASE}/api/v1/manga/42/chapters", json=sample_chapters)
    responses_mock.add(responses.DELETE, f"{BASE}/api/v1/manga/42/chapter/1", status=200)
    responses_mock.add(responses.DELETE, f"{BASE}/api/v1/manga/42/chapter/3", status=200)
    lib = make_library()
    work = work_from_manga({"id": 42, "sourceId": "2", "title": "Blue Lock"})
    assert await lib.downloads.count_for(work) == 2
    await lib.downloads.delete_for(work, lib.sources.get(2))
    deleted = [c.request.url for c in responses_mock.calls if c.request.method == "DELETE"]
    assert deleted == [f"{BASE}/api/v1/manga/42/chapter/1", f"{BASE}/api/v1/manga/42/chapter/3"]


@pytest.mark.asyncio
async def test_tracks_via_graphql(responses_mock: responses.RequestsMock):
    responses_mock.add(
        responses.POST,
        f"{BASE}/api/graphql",
        json={"data": {"manga": {"trackRecords": {"nodes": [
            {"id": 9, "trackerId": 1, "remoteId": "555", "title": "Blue Lock", "status": 1,
             "score": 8.0, "lastChapterRead": 2.0, "totalChapters": 0, "remoteUrl": "https://myanimelist.net/manga/555"},
        ]}}}},
    )
    lib = make_library()
    (track,) = await lib.tracks.list_by_work(1)
    assert (track.id, track.work_id, track.service_id, track.remote_id) == (9, 1, 1, 555)
    assert track.last_chapter_read == 2.0

    responses_mock.replace(
        responses.POST,
        f"{BASE}/api/graphql",
        json={"data": {"bindTrack": {"trackRecord": {"id": 10}}}},
    )
    await lib.tracks.batch_upsert([TrackRecord(work_id=2, service_id=1, remote_id=555)])
    body = json.loads(responses_mock.calls[-1].request.body)
    assert body["variables"] == {"mangaId": 2, "trackerId": 1, "remoteId": "555"}


@pytest.mark.asyncio
async def test_graphql_errors_raise(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.POST, f"{BASE}/api/graphql", json={"errors": [{"message": "no such field"}]})
    with pytest.raises(RuntimeError, match="GraphQL request failed"):
        await make_library().tracks.list_by_work(1)


@pytest.mark.asyncio
async def test_resolver_loads_details_of_search_result(responses_mock: responses.RequestsMock, sample_manga: dict):
    responses_mock.add(responses.GET, f"{BASE}/api/v1/manga/42", json=sample_manga)
    work = await make_library().resolver.resolve(2, {"id": 42, "title": "Blue Lock"})
    assert work.id == 42
    assert work.url == "/title/blue-lock"


@pytest.mark.asyncio
async def test_resolver_rejects_result_without_id():
    with pytest.raises(ValueError):
        await make_library().resolver.resolve(2, {"title": "Blue Lock"})


@pytest.mark.asyncio
async def test_searcher_returns_result_list(responses_mock: responses.RequestsMock):
    responses_mock.add(
        responses.GET,
        f"{BASE}/api/v1/source/2/search",
        json={"mangaList": [{"id": 42, "title": "Blue Lock"}], "hasNextPage": False},
        match=[matchers.query_param_matcher({"searchTerm": "blue lock", "pageNum": "1"})],
    )
    results = await make_library().searcher(2)("blue lock")
    assert results == [{"id": 42, "title": "Blue Lock"}]


def test_find_sources_keeps_priority_order_and_excludes():
    sources = [
        {"id": "1", "name": "MangaDex"},
        {"id": "2", "name": "Comick"},
        {"id": "3", "name": "MangaSee"},
    ]
    assert [s["id"] for s in find_sources(sources, ["mangasee", "2"])] == ["3", "2"]
    assert [s["id"] for s in find_sources(sources, ["manga"], exclude=["dex"])] == ["3"]
    assert find_sources(sources, [""]) == []
