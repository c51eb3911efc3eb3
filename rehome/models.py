import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional


class MigrationFlag(enum.Flag):
    """Independently toggleable transfer behaviours for a migration."""
    CHAPTER = 1
    CUSTOM_COVER = 2
    NOTES = 4
    REMOVE_DOWNLOAD = 8

    ALL = CHAPTER | CUSTOM_COVER | NOTES | REMOVE_DOWNLOAD

    @classmethod
    def parse(cls, text: Optional[str]) -> "MigrationFlag":
        """Parse a comma list such as 'chapter,custom-cover'. Unknown names raise ValueError."""
        flags = cls(0)
        for raw in (text or "").split(","):
            name = raw.strip().upper().replace("-", "_")
            if not name:
                continue
            if name not in cls.__members__:
                raise ValueError(f"Unknown migration flag: {raw.strip()!r}")
            flags |= cls[name]
        return flags

    def names(self) -> List[str]:
        out: List[str] = []
        for name in ("CHAPTER", "CUSTOM_COVER", "NOTES", "REMOVE_DOWNLOAD"):
            if type(self)[name] in self:
                out.append(name.lower().replace("_", "-"))
        return out


@dataclass
class Work:
    """A cataloged title on one source. Identity is (source_id, id)."""
    id: int
    source_id: int
    title: str
    url: str = ""
    favorite: bool = False
    category_ids: List[int] = field(default_factory=list)
    chapter_flags: int = 0
    viewer_flags: int = 0
    notes: str = ""
    has_custom_cover: bool = False
    date_added: int = 0
    thumbnail_url: Optional[str] = None

    @property
    def key(self):
        return (self.source_id, self.id)


@dataclass
class Chapter:
    id: int
    work_id: int
    recognized_number: Optional[float] = None
    read: bool = False
    bookmark: bool = False
    date_fetch: int = 0
    last_page_read: int = 0
    name: str = ""
    url: str = ""
    downloaded: bool = False
    source_order: int = 0

    @property
    def is_recognized_number(self) -> bool:
        return self.recognized_number is not None


@dataclass
class TrackRecord:
    work_id: int
    service_id: int
    remote_id: int
    id: Optional[int] = None
    title: str = ""
    last_chapter_read: float = 0.0
    total_chapters: int = 0
    status: int = 0
    score: float = 0.0
    tracking_url: str = ""


@dataclass
class ChapterUpdate:
    """Sparse chapter update; None fields are left untouched."""
    id: int
    read: Optional[bool] = None
    bookmark: Optional[bool] = None
    date_fetch: Optional[int] = None
    last_page_read: Optional[int] = None


@dataclass
class WorkUpdate:
    """Sparse work update; None fields are left untouched."""
    id: int
    favorite: Optional[bool] = None
    chapter_flags: Optional[int] = None
    viewer_flags: Optional[int] = None
    date_added: Optional[int] = None
    notes: Optional[str] = None


@dataclass
class SearchCandidate:
    result: Any
    score: float
    query: str = ""
