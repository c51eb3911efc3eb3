from __future__ import annotations

import asyncio
import logging

import pytest

from rehome.errors import NoCandidate
from rehome.memory import InMemorySource
from rehome.search import CandidateSearchEngine, SearchMode, result_title


def make_source(*titles: str) -> InMemorySource:
    return InMemorySource(9, "Test", entries=[{"title": t, "url": f"/{i}"} for i, t in enumerate(titles)])


@pytest.mark.parametrize(
    "item,expected",
    [
        ({"title": "Blue Lock"}, "Blue Lock"),
        ({"name": "Blue Lock"}, "Blue Lock"),
        ({"label": "Blue Lock"}, "Blue Lock"),
        ({}, ""),
    ],
)
def test_result_title(item: dict, expected: str):
    assert result_title(item) == expected


@pytest.mark.asyncio
async def test_regular_search_accepts_sole_result(caplog: pytest.LogCaptureFixture):
    source = make_source("Naruto (VIZ Media) Vol.1")
    engine = CandidateSearchEngine()
    with caplog.at_level(logging.WARNING, logger="rehome.search"):
        candidate = await engine.regular_search("Naruto", source.search)
    assert candidate is not None
    assert candidate.result["title"] == "Naruto (VIZ Media) Vol.1"
    assert candidate.score == 1.0
    assert source.queries == ["Naruto"]
    assert "Accepting sole result" in caplog.text


@pytest.mark.asyncio
async def test_regular_search_without_shortcut_applies_threshold():
    source = make_source("Naruto (VIZ Media) Vol.1")
    engine = CandidateSearchEngine(sole_result_shortcut=False)
    # raw similarity is 0.25, below the default threshold
    assert await engine.regular_search("Naruto", source.search) is None


@pytest.mark.asyncio
async def test_regular_search_picks_best_of_several_results():
    source = make_source("Blue Lock", "Blue Lock: Episode Nagi")
    engine = CandidateSearchEngine()
    candidate = await engine.regular_search("Blue Lock", source.search)
    assert candidate is not None
    assert candidate.result["title"] == "Blue Lock"
    assert candidate.score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_deep_search_runs_planned_queries_and_keeps_best():
    source = make_source("Naruto", "Naruto Shippuden")
    engine = CandidateSearchEngine()
    candidate = await engine.deep_search("Naruto (VIZ Media) Vol.1", source.search)
    assert sorted(source.queries) == ["naruto", "naruto vol"]
    assert candidate is not None
    assert candidate.result["title"] == "Naruto"
    assert candidate.query == "naruto"
    assert candidate.score == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_deep_search_respects_threshold_override():
    source = make_source("Naruto", "Naruto Shippuden")
    engine = CandidateSearchEngine()
    assert await engine.search("Naruto (VIZ Media) Vol.1", source.search, SearchMode.DEEP, threshold=0.9) is None


@pytest.mark.asyncio
async def test_ties_resolve_to_earliest_query_regardless_of_completion_order():
    async def search(query: str) -> list:
        if query == "blue lock":
            await asyncio.sleep(0.02)
            return [{"title": "Blue Lock", "id": 1}]
        return [{"title": "Blue Lock", "id": 2}]

    candidate = await CandidateSearchEngine().deep_search("Blue Lock", search)
    assert candidate is not None
    assert candidate.result["id"] == 1
    assert candidate.query == "blue lock"


@pytest.mark.asyncio
async def test_failing_query_counts_as_empty(caplog: pytest.LogCaptureFixture):
    async def search(query: str) -> list:
        if query == "naruto vol":
            raise ConnectionError("source down")
        return [{"title": "Naruto"}]

    with caplog.at_level(logging.WARNING, logger="rehome.search"):
        candidate = await CandidateSearchEngine().deep_search("Naruto (VIZ Media) Vol.1", search)
    assert candidate is not None
    assert candidate.result["title"] == "Naruto"
    assert "Source search failed" in caplog.text


@pytest.mark.asyncio
async def test_unreachable_source_yields_no_candidate():
    source = InMemorySource(9, "Down", entries=[{"title": "Naruto"}], failing=True)
    assert await CandidateSearchEngine().deep_search("Naruto", source.search) is None
    assert await CandidateSearchEngine().regular_search("Naruto", source.search) is None


@pytest.mark.asyncio
async def test_cancellation_propagates():
    started = asyncio.Event()

    async def slow(query: str) -> list:
        started.set()
        await asyncio.sleep(10)
        return []

    task = asyncio.create_task(CandidateSearchEngine().deep_search("One Piece", slow))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_extra_query_is_appended_to_every_query():
    seen: list = []

    async def search(query: str) -> list:
        seen.append(query)
        return []

    engine = CandidateSearchEngine(extra_query="manga")
    await engine.regular_search("One Piece", search)
    await engine.deep_search("One Piece", search)
    assert seen[0] == "One Piece manga"
    assert sorted(seen[1:]) == sorted(["one piece manga", "piece one manga", "piece manga", "one manga"])


@pytest.mark.asyncio
async def test_blank_title_runs_no_queries():
    source = make_source("Anything")
    engine = CandidateSearchEngine()
    assert await engine.regular_search("   ", source.search) is None
    assert await engine.deep_search("(   )", source.search) is None
    assert source.queries == []


@pytest.mark.asyncio
async def test_require_raises_no_candidate():
    source = make_source("Completely Different")
    engine = CandidateSearchEngine(sole_result_shortcut=False)
    with pytest.raises(NoCandidate) as exc:
        await engine.require("Naruto", source.search)
    assert exc.value.details["title"] == "Naruto"


@pytest.mark.asyncio
async def test_regular_search_ties_go_to_first_result():
    async def search(query: str) -> list:
        return [{"title": "Blue Lock", "id": 1}, {"title": "Blue Lock", "id": 2}]

    candidate = await CandidateSearchEngine().regular_search("Blue Lock", search)
    assert candidate is not None
    assert candidate.result["id"] == 1
    assert candidate.score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_deep_search_scores_sole_result_of_single_query():
    source = make_source("Completely Different")
    engine = CandidateSearchEngine()
    assert await engine.deep_search("Naruto", source.search) is None
    assert source.queries == ["naruto"]
