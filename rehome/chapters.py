import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .models import Chapter, ChapterUpdate

_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")


@dataclass
class Correspondence:
    updates: List[ChapterUpdate] = field(default_factory=list)
    max_read_number: Optional[float] = None


def parse_chapter_number(item: Mapping[str, Any]) -> Optional[float]:
    """Recognized chapter number of a raw chapter payload, or None.
    Structured fields win over numbers found in the chapter name. A negative
    structured value is the server's 'unrecognized' sentinel."""
    for k in ("chapterNumber", "chapter", "number"):
        v = item.get(k)
        if isinstance(v, bool) or v is None:
            continue
        if isinstance(v, (int, float)):
            return float(v) if v >= 0 else None
        if isinstance(v, str):
            m = _NUMBER_RE.search(v)
            if m:
                return float(m.group(1))
    for k in ("name", "title"):
        v = item.get(k)
        if isinstance(v, str):
            m = _NUMBER_RE.search(v)
            if m:
                return float(m.group(1))
    return None


def max_read_number(chapters: Sequence[Chapter]) -> Optional[float]:
    nums = [c.recognized_number for c in chapters if c.read and c.is_recognized_number]
    return max(nums) if nums else None


def chapter_info(chapters: Sequence[Chapter]) -> Tuple[int, Optional[float]]:
    """(chapter count, highest recognized chapter number)."""
    nums = [c.recognized_number for c in chapters if c.is_recognized_number]
    return len(chapters), (max(nums) if nums else None)


def build_correspondence(source_chapters: Sequence[Chapter], target_chapters: Sequence[Chapter]) -> Correspondence:
    """Match target chapters to source chapters by exact recognized number.

    A matched target takes the source chapter's fetch date and bookmark. Every
    recognized target at or below the highest read source number is marked
    read, matched or not. Chapters without a recognized number are left alone.
    Only targets that actually change get an update.
    """
    max_read = max_read_number(source_chapters)

    by_number: Dict[float, Chapter] = {}
    for ch in source_chapters:
        if ch.is_recognized_number:
            by_number.setdefault(ch.recognized_number, ch)

    updates: List[ChapterUpdate] = []
    for target in target_chapters:
        if not target.is_recognized_number:
            continue
        update = ChapterUpdate(id=target.id)
        prev = by_number.get(target.recognized_number)
        if prev is not None:
            if prev.date_fetch != target.date_fetch:
                update.date_fetch = prev.date_fetch
            if prev.bookmark != target.bookmark:
                update.bookmark = prev.bookmark
        if max_read is not None and target.recognized_number <= max_read and not target.read:
            update.read = True
        if update != ChapterUpdate(id=target.id):
            updates.append(update)
    return Correspondence(updates=updates, max_read_number=max_read)
