import csv
import json
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

try:
    import pandas as pd  # Optional, only used for xlsx
except Exception:
    pd = None

from .batch import BatchItem

MANGA_URL_RE = re.compile(r"/manga/(\d+)(?!\d)", re.IGNORECASE)
# URLs are kept whole so numbers inside them (ports, paths) are not read as ids
TOKEN_RE = re.compile(r"https?://[^\s\"'<>]+|[^\s,;]+", re.IGNORECASE)

REPORT_COLUMNS = [
    "status", "title", "source_id", "manga_id", "chapters", "latest_chapter",
    "match_title", "match_source_id", "match_manga_id", "match_chapters",
    "match_latest_chapter", "score", "failed_steps", "error",
]


def extract_manga_ids(text: str) -> List[str]:
    """Manga ids from Suwayomi manga URLs and bare integer tokens."""
    ids: List[str] = []
    for m in TOKEN_RE.finditer(text):
        tok = m.group(0)
        if tok.lower().startswith(("http://", "https://")):
            url = MANGA_URL_RE.search(tok)
            if url:
                ids.append(url.group(1))
        elif tok.isdigit():
            ids.append(tok)
    return list(dict.fromkeys(ids))


def read_manga_ids(path: Path) -> List[int]:
    suffix = path.suffix.lower()
    data: List[str] = []
    if suffix in {".json"}:
        obj = json.loads(path.read_text(encoding="utf-8"))

        def walk(o: Any):
            if isinstance(o, bool):
                return
            if isinstance(o, int):
                yield str(o)
            elif isinstance(o, str):
                yield from extract_manga_ids(o)
            elif isinstance(o, dict):
                # manga objects: take the id, skip the other numeric fields
                for k in ("id", "mangaId", "manga_id"):
                    if k in o:
                        yield from walk(o[k])
                        return
                for v in o.values():
                    yield from walk(v)
            elif isinstance(o, list):
                for v in o:
                    yield from walk(v)
        data = list(dict.fromkeys(walk(obj)))
    elif suffix in {".csv"}:
        buf: List[str] = []
        with path.open(newline='', encoding='utf-8', errors='ignore') as f:
            for row in csv.reader(f):
                for cell in row:
                    buf.extend(extract_manga_ids(str(cell)))
        data = list(dict.fromkeys(buf))
    elif suffix in {".xlsx", ".xls"}:
        if pd is None:
            raise SystemExit('pandas/openpyxl are required for Excel files. Install with: python -m pip install "rehome[excel]"')
        buf = []
        # Read all sheets
        xls = pd.read_excel(path, sheet_name=None, dtype=str)
        for _, df in xls.items():
            for val in df.astype(str).to_numpy().flatten():
                buf.extend(extract_manga_ids(str(val)))
        data = list(dict.fromkeys(buf))
    else:
        # .txt and anything else: treat as text
        data = extract_manga_ids(path.read_text(encoding="utf-8", errors="ignore"))
    return [int(x) for x in data]


def report_rows(items: Iterable[BatchItem]) -> List[Dict[str, Any]]:
    rows = []
    for it in items:
        m = it.match
        rows.append({
            "status": it.status,
            "title": it.work.title,
            "source_id": it.work.source_id,
            "manga_id": it.work.id,
            "chapters": it.chapter_count,
            "latest_chapter": it.latest_chapter,
            "match_title": m.title if m else None,
            "match_source_id": m.source_id if m else None,
            "match_manga_id": m.id if m else None,
            "match_chapters": it.match_chapter_count if m else None,
            "match_latest_chapter": it.match_latest_chapter if m else None,
            "score": round(it.score, 4) if it.score is not None else None,
            "failed_steps": ",".join(it.report.failed_steps) if it.report else "",
            "error": it.error or "",
        })
    return rows


def write_report(items: Sequence[BatchItem], path: Path) -> Path:
    rows = report_rows(items)
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()
    if suffix == ".json":
        path.write_text(json.dumps(rows, indent=2, ensure_ascii=False), encoding="utf-8")
    elif suffix == ".xlsx":
        if pd is None:
            raise SystemExit('pandas/openpyxl are required for Excel files. Install with: python -m pip install "rehome[excel]"')
        df = pd.DataFrame(rows, columns=REPORT_COLUMNS)
        df.to_excel(path, index=False, engine='openpyxl')
    else:
        with path.open("w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(REPORT_COLUMNS)
            for row in rows:
                w.writerow(["" if row[c] is None else row[c] for c in REPORT_COLUMNS])
    return path
