"""Suwayomi server backend: HTTP client plus async adapters for the collaborator contracts."""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from .chapters import parse_chapter_number
from .models import Chapter, ChapterUpdate, TrackRecord, Work, WorkUpdate

logger = logging.getLogger(__name__)

# Manga meta keys used for fields the server has no column for
META_NOTES = "rehome.notes"
META_CHAPTER_FLAGS = "rehome.chapterFlags"
META_VIEWER_FLAGS = "rehome.viewerFlags"
META_DATE_ADDED = "rehome.dateAdded"


def truncate_text(t: str, limit: int = 200) -> str:
    t = (t or "").replace('\n', ' ')[:limit]
    return t + ("..." if len(t) == limit else "")


def _to_list(js: Any, keys: Sequence[str] = ("chapters", "data", "list", "items")) -> List[Dict[str, Any]]:
    if isinstance(js, list):
        return [x for x in js if isinstance(x, dict)]
    if isinstance(js, dict):
        for k in keys:
            v = js.get(k)
            if isinstance(v, list):
                return [x for x in v if isinstance(x, dict)]
    return []


class SuwayomiClient:
    def __init__(self, base_url: str, auth_mode: str = "auto", username: Optional[str] = None, password: Optional[str] = None, token: Optional[str] = None, verify_tls: bool = True, request_timeout: float = 12.0):
        self.base_url = base_url.rstrip('/')
        self.sess = requests.Session()
        self.headers: Dict[str, str] = {}
        self.auth_mode = auth_mode
        self.username = username
        self.password = password
        self.token = token
        self.verify = verify_tls
        self.timeout = request_timeout
        self.last_status: Optional[int] = None

    def _auth(self):
        # Modes: basic, simple, bearer, auto
        if self.auth_mode == "bearer" and self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"
        elif self.auth_mode == "basic" and self.username and self.password:
            self.sess.auth = (self.username, self.password)
        elif self.auth_mode == "simple" and self.username and self.password:
            # Form login sets a session cookie
            resp = self.sess.post(f"{self.base_url}/login.html", data={"user": self.username, "pass": self.password}, allow_redirects=False, verify=self.verify, timeout=self.timeout)
            if resp.status_code not in (200, 302, 303):
                raise RuntimeError(f"Simple login failed: HTTP {resp.status_code}")
        elif self.auth_mode == "auto":
            # bearer first, then basic (falls back to simple on 401 in request())
            if self.token:
                self.headers["Authorization"] = f"Bearer {self.token}"
            elif self.username and self.password:
                self.sess.auth = (self.username, self.password)

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = dict(self.headers)
        headers.update(kwargs.pop("headers", {}) or {})
        if 'timeout' not in kwargs:
            kwargs['timeout'] = self.timeout
        resp = self.sess.request(method, url, headers=headers, verify=self.verify, **kwargs)
        # 401 with basic on auto: try SIMPLE login once
        if resp.status_code == 401 and self.auth_mode == "auto" and self.username and self.password:
            login = self.sess.post(f"{self.base_url}/login.html", data={"user": self.username, "pass": self.password}, allow_redirects=False, verify=self.verify, timeout=self.timeout)
            if login.status_code in (200, 302, 303):
                resp = self.sess.request(method, url, headers=headers, verify=self.verify, **kwargs)
        self.last_status = resp.status_code
        return resp

    # --- sources ---
    def get_sources(self) -> List[Dict[str, Any]]:
        r = self.request("GET", "/api/v1/source/list")
        r.raise_for_status()
        return r.json()

    def search_source(self, source_id: int, query: str, page: int = 1) -> Dict[str, Any]:
        r = self.request("GET", f"/api/v1/source/{source_id}/search", params={"searchTerm": query, "pageNum": page})
        r.raise_for_status()
        return r.json()

    @staticmethod
    def normalize_search_items(payload: Any) -> List[Dict[str, Any]]:
        if payload is None:
            return []
        if isinstance(payload, list):
            return [x for x in payload if isinstance(x, dict)]
        if isinstance(payload, dict):
            # Common keys across forks
            for k in (
                'mangaList', 'mangaListData', 'manga_list', 'results', 'data', 'list', 'items', 'entries', 'mangas', 'manga'
            ):
                v = payload.get(k)
                if isinstance(v, list):
                    return [x for x in v if isinstance(x, dict)]
            # Some APIs embed under an extra layer
            for k in ('data', 'result'):
                v = payload.get(k)
                if isinstance(v, dict):
                    for kk in ('items', 'list', 'results', 'mangaList', 'manga'):
                        vv = v.get(kk)
                        if isinstance(vv, list):
                            return [x for x in vv if isinstance(x, dict)]
        return []

    @staticmethod
    def extract_manga_id(item: Dict[str, Any]) -> Optional[int]:
        for k in ('id', 'mangaId', 'manga_id'):
            v = item.get(k)
            if v is None:
                continue
            try:
                return int(v)
            except (TypeError, ValueError):
                continue
        return None

    # --- manga ---
    def get_manga_details(self, manga_id: int) -> Dict[str, Any]:
        r = self.request("GET", f"/api/v1/manga/{manga_id}")
        if r.status_code != 200:
            return {}
        try:
            return r.json()
        except ValueError:
            return {}

    def add_to_library(self, manga_id: int) -> bool:
        r = self.request("GET", f"/api/v1/manga/{manga_id}/library")
        return r.status_code == 200

    def remove_from_library(self, manga_id: int) -> bool:
        # Some builds support DELETE; GET fallback path otherwise
        r = self.request("DELETE", f"/api/v1/manga/{manga_id}/library")
        if r.status_code == 200:
            return True
        r2 = self.request("GET", f"/api/v1/manga/{manga_id}/library/remove")
        return r2.status_code == 200

    def set_manga_meta(self, manga_id: int, key: str, value: str) -> None:
        r = self.request("PATCH", f"/api/v1/manga/{manga_id}/meta", data={"key": key, "value": value})
        r.raise_for_status()

    def get_library(self) -> List[Dict[str, Any]]:
        for ep in ("/api/v1/library", "/api/v1/category/0"):
            try:
                r = self.request("GET", ep)
            except requests.RequestException as e:
                logger.debug("Library request %s failed: %s", ep, e)
                continue
            if r.status_code != 200:
                logger.debug("HTTP %s %s: %s", r.status_code, ep, truncate_text(r.text, 120))
                continue
            try:
                items = _to_list(r.json(), ("data", "manga", "list", "mangaList", "items"))
            except ValueError:
                continue
            if items:
                return items
        logger.debug("Falling back to GraphQL for library list")
        res = self.graphql("query { mangas(condition: {inLibrary: true}) { nodes { id title url sourceId inLibrary } } }")
        nodes = (((res or {}).get("data") or {}).get("mangas") or {}).get("nodes")
        return [x for x in nodes if isinstance(x, dict)] if isinstance(nodes, list) else []

    # --- categories ---
    def get_manga_categories(self, manga_id: int) -> List[Dict[str, Any]]:
        r = self.request("GET", f"/api/v1/manga/{manga_id}/category")
        r.raise_for_status()
        return _to_list(r.json(), ("categories", "data"))

    def add_manga_to_category(self, manga_id: int, category_id: int) -> bool:
        # Endpoint adds manga to category via GET per server API design
        r = self.request("GET", f"/api/v1/manga/{manga_id}/category/{category_id}")
        return r.status_code == 200

    def remove_manga_from_category(self, manga_id: int, category_id: int) -> bool:
        r = self.request("DELETE", f"/api/v1/manga/{manga_id}/category/{category_id}")
        return r.status_code == 200

    # --- chapters ---
    def get_chapters(self, manga_id: int, online_fetch: bool = False) -> List[Dict[str, Any]]:
        """Chapter list of a manga. online_fetch asks the server to refresh it from the source first."""
        params = {"onlineFetch": "true"} if online_fetch else None
        r = self.request("GET", f"/api/v1/manga/{manga_id}/chapters", params=params)
        r.raise_for_status()
        return _to_list(r.json(), ("chapters", "chapterList", "data"))

    def update_chapters(self, chapter_ids: Sequence[int], change: Dict[str, Any]) -> None:
        r = self.request("POST", "/api/v1/chapter/batch", json={"chapterIds": list(chapter_ids), "change": change})
        r.raise_for_status()

    def delete_downloaded_chapter(self, manga_id: int, chapter_index: int) -> None:
        r = self.request("DELETE", f"/api/v1/manga/{manga_id}/chapter/{chapter_index}")
        r.raise_for_status()

    # --- GraphQL helpers ---
    def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        headers = dict(self.headers)
        headers["Content-Type"] = "application/json"
        payload: Dict[str, Any] = {"query": query}
        if variables is not None:
            payload["variables"] = variables
        # Try /api/graphql then /graphql
        for p in ("/api/graphql", "/graphql"):
            try:
                r = self.sess.post(f"{self.base_url}{p}", headers=headers, data=json.dumps(payload), verify=self.verify, timeout=self.timeout)
            except requests.RequestException as e:
                logger.debug("GraphQL post to %s failed: %s", p, e)
                continue
            if r.status_code != 200:
                logger.debug("GraphQL HTTP %s %s: %s", r.status_code, p, truncate_text(r.text, 160))
                continue
            try:
                js = r.json()
            except ValueError as je:
                logger.debug("Invalid JSON from %s: %s", p, je)
                continue
            if isinstance(js, dict) and js.get('errors'):
                logger.debug("GraphQL errors: %s", truncate_text(json.dumps(js['errors']), 400))
            return js
        return None

    def _graphql_data(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        res = self.graphql(query, variables)
        if not isinstance(res, dict) or not isinstance(res.get("data"), dict):
            errors = (res or {}).get("errors") if isinstance(res, dict) else None
            raise RuntimeError(f"GraphQL request failed: {truncate_text(json.dumps(errors), 200) if errors else 'no response'}")
        return res["data"]

    # --- tracking ---
    def get_track_records(self, manga_id: int) -> List[Dict[str, Any]]:
        q = (
            "query($id:Int!){ manga(id:$id){ trackRecords { nodes { "
            "id trackerId remoteId title status score lastChapterRead totalChapters remoteUrl } } } }"
        )
        data = self._graphql_data(q, {"id": int(manga_id)})
        nodes = ((data.get("manga") or {}).get("trackRecords") or {}).get("nodes")
        return [x for x in nodes if isinstance(x, dict)] if isinstance(nodes, list) else []

    def bind_track(self, manga_id: int, tracker_id: int, remote_id: int) -> Dict[str, Any]:
        q = (
            "mutation($mangaId:Int!,$trackerId:Int!,$remoteId:LongString!){ "
            "bindTrack(input:{mangaId:$mangaId,trackerId:$trackerId,remoteId:$remoteId}){ trackRecord { id } } }"
        )
        data = self._graphql_data(q, {"mangaId": int(manga_id), "trackerId": int(tracker_id), "remoteId": str(remote_id)})
        return (data.get("bindTrack") or {}).get("trackRecord") or {}


# --- payload mapping ---

def _int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def work_from_manga(data: Dict[str, Any], source_id: Optional[int] = None) -> Work:
    meta = data.get("meta") or {}
    date_added = _int(meta.get(META_DATE_ADDED), -1)
    if date_added < 0:
        # server keeps seconds
        date_added = _int(data.get("inLibraryAt")) * 1000
    return Work(
        id=_int(data.get("id")),
        source_id=_int(data.get("sourceId"), source_id or 0),
        title=str(data.get("title") or data.get("name") or ""),
        url=str(data.get("url") or ""),
        favorite=bool(data.get("inLibrary")),
        chapter_flags=_int(meta.get(META_CHAPTER_FLAGS)),
        viewer_flags=_int(meta.get(META_VIEWER_FLAGS)),
        notes=str(meta.get(META_NOTES) or ""),
        date_added=date_added,
        thumbnail_url=data.get("thumbnailUrl"),
    )


def chapter_from_item(item: Dict[str, Any], manga_id: int) -> Chapter:
    return Chapter(
        id=_int(item.get("id")),
        work_id=_int(item.get("mangaId"), manga_id),
        recognized_number=parse_chapter_number(item),
        read=bool(item.get("read") or item.get("isRead")),
        bookmark=bool(item.get("bookmarked") or item.get("isBookmarked")),
        date_fetch=_int(item.get("fetchedAt")),
        last_page_read=_int(item.get("lastPageRead")),
        name=str(item.get("name") or ""),
        url=str(item.get("url") or ""),
        downloaded=bool(item.get("downloaded") or item.get("isDownloaded")),
        source_order=_int(item.get("index")),
    )


def track_from_node(node: Dict[str, Any], manga_id: int) -> TrackRecord:
    return TrackRecord(
        id=_int(node.get("id")) or None,
        work_id=manga_id,
        service_id=_int(node.get("trackerId")),
        remote_id=_int(node.get("remoteId")),
        title=str(node.get("title") or ""),
        last_chapter_read=float(node.get("lastChapterRead") or 0.0),
        total_chapters=_int(node.get("totalChapters")),
        status=_int(node.get("status")),
        score=float(node.get("score") or 0.0),
        tracking_url=str(node.get("remoteUrl") or ""),
    )


# --- async adapters ---

class _Works:
    def __init__(self, client: SuwayomiClient):
        self.client = client

    async def batch_update(self, updates: Sequence[WorkUpdate]) -> None:
        for u in updates:
            await asyncio.to_thread(self._apply, u)

    def _apply(self, u: WorkUpdate) -> None:
        if u.favorite is True and not self.client.add_to_library(u.id):
            raise RuntimeError(f"Could not add manga {u.id} to library (HTTP {self.client.last_status})")
        if u.favorite is False and not self.client.remove_from_library(u.id):
            raise RuntimeError(f"Could not remove manga {u.id} from library (HTTP {self.client.last_status})")
        meta: List[Tuple[str, Any]] = [
            (META_NOTES, u.notes),
            (META_CHAPTER_FLAGS, u.chapter_flags),
            (META_VIEWER_FLAGS, u.viewer_flags),
            (META_DATE_ADDED, u.date_added),
        ]
        for key, value in meta:
            if value is not None:
                self.client.set_manga_meta(u.id, key, str(value))


class _Chapters:
    def __init__(self, client: SuwayomiClient):
        self.client = client

    async def list_by_work(self, work_id: int) -> List[Chapter]:
        items = await asyncio.to_thread(self.client.get_chapters, work_id)
        return [chapter_from_item(it, work_id) for it in items]

    async def batch_update(self, updates: Sequence[ChapterUpdate]) -> None:
        # The batch endpoint applies one change to many chapters; group identical changes
        groups: Dict[Tuple[Tuple[str, Any], ...], List[int]] = {}
        for u in updates:
            if u.date_fetch is not None:
                logger.debug("Chapter %s fetch date is managed by the server; left as is", u.id)
            change: Dict[str, Any] = {}
            if u.read is not None:
                change["isRead"] = u.read
            if u.bookmark is not None:
                change["isBookmarked"] = u.bookmark
            if u.last_page_read is not None:
                change["lastPageRead"] = u.last_page_read
            if change:
                groups.setdefault(tuple(sorted(change.items())), []).append(u.id)
        for change, ids in groups.items():
            await asyncio.to_thread(self.client.update_chapters, ids, dict(change))


class _Categories:
    def __init__(self, client: SuwayomiClient):
        self.client = client

    async def list_by_work(self, work_id: int) -> List[int]:
        cats = await asyncio.to_thread(self.client.get_manga_categories, work_id)
        # id 0 is the implicit default category
        return [_int(c.get("id")) for c in cats if _int(c.get("id")) != 0]

    async def set_for_work(self, work_id: int, category_ids: Sequence[int]) -> None:
        current = set(await self.list_by_work(work_id))
        wanted = set(category_ids)
        await asyncio.to_thread(self._apply, work_id, sorted(wanted - current), sorted(current - wanted))

    def _apply(self, work_id: int, add: List[int], remove: List[int]) -> None:
        for cid in add:
            if not self.client.add_manga_to_category(work_id, cid):
                raise RuntimeError(f"Could not add manga {work_id} to category {cid} (HTTP {self.client.last_status})")
        for cid in remove:
            if not self.client.remove_manga_from_category(work_id, cid):
                raise RuntimeError(f"Could not remove manga {work_id} from category {cid} (HTTP {self.client.last_status})")


class _Tracks:
    def __init__(self, client: SuwayomiClient):
        self.client = client

    async def list_by_work(self, work_id: int) -> List[TrackRecord]:
        nodes = await asyncio.to_thread(self.client.get_track_records, work_id)
        return [track_from_node(n, work_id) for n in nodes]

    async def batch_upsert(self, records: Sequence[TrackRecord]) -> None:
        for record in records:
            await asyncio.to_thread(self.client.bind_track, record.work_id, record.service_id, record.remote_id)


class _Downloads:
    def __init__(self, client: SuwayomiClient):
        self.client = client

    async def count_for(self, work: Work) -> int:
        items = await asyncio.to_thread(self.client.get_chapters, work.id)
        return sum(1 for it in items if it.get("downloaded") or it.get("isDownloaded"))

    async def delete_for(self, work: Work, source: Any) -> None:
        items = await asyncio.to_thread(self.client.get_chapters, work.id)
        for it in items:
            if it.get("downloaded") or it.get("isDownloaded"):
                await asyncio.to_thread(self.client.delete_downloaded_chapter, work.id, _int(it.get("index")))


class _ChapterSource:
    def __init__(self, client: SuwayomiClient):
        self.client = client

    async def sync_chapters(self, work: Work) -> None:
        items = await asyncio.to_thread(self.client.get_chapters, work.id, True)
        logger.debug("Synced %d chapters for %r", len(items), work.title)


class _Sources:
    def __init__(self, sources: Sequence[Dict[str, Any]]):
        self.by_id = {_int(s.get("id")): s for s in sources}

    def get(self, source_id: int) -> Optional[Dict[str, Any]]:
        return self.by_id.get(source_id)


class _Resolver:
    def __init__(self, client: SuwayomiClient):
        self.client = client

    async def resolve(self, source_id: int, result: Dict[str, Any]) -> Work:
        # Search results are already stored server-side and carry their manga id
        mid = SuwayomiClient.extract_manga_id(result)
        if mid is None:
            raise ValueError(f"Search result has no manga id: {truncate_text(json.dumps(result), 120)}")
        details = await asyncio.to_thread(self.client.get_manga_details, mid)
        return work_from_manga(details or dict(result), source_id=source_id)


class SuwayomiLibrary:
    """Every collaborator contract backed by one Suwayomi server."""

    def __init__(self, client: SuwayomiClient, sources: Sequence[Dict[str, Any]] = ()):
        self.client = client
        self.works = _Works(client)
        self.chapters = _Chapters(client)
        self.categories = _Categories(client)
        self.tracks = _Tracks(client)
        self.downloads = _Downloads(client)
        self.chapter_source = _ChapterSource(client)
        self.sources = _Sources(sources)
        self.resolver = _Resolver(client)

    async def load_work(self, manga_id: int) -> Optional[Work]:
        details = await asyncio.to_thread(self.client.get_manga_details, manga_id)
        return work_from_manga(details) if details else None

    def searcher(self, source_id: int):
        async def search(query: str) -> List[Dict[str, Any]]:
            payload = await asyncio.to_thread(self.client.search_source, source_id, query, 1)
            return SuwayomiClient.normalize_search_items(payload)
        return search


def find_sources(sources: Sequence[Dict[str, Any]], wanted: Sequence[str], exclude: Sequence[str] = ()) -> List[Dict[str, Any]]:
    """Resolve source ids or name fragments to source dicts, keeping the order of `wanted`."""
    out: List[Dict[str, Any]] = []
    seen = set()
    excl = [e.strip().lower() for e in exclude if e.strip()]
    for frag in (w.strip().lower() for w in wanted):
        if not frag:
            continue
        for s in sources:
            sid = _int(s.get("id"))
            nm = (s.get("name") or s.get("apkName") or "").lower()
            if sid in seen or any(e in nm for e in excl):
                continue
            if frag == str(sid) or (not frag.isdigit() and frag in nm):
                seen.add(sid)
                out.append(s)
    return out
