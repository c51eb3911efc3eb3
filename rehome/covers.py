import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)


class FileCoverStore:
    """Custom covers kept as one file per work id under a directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, work_id: int) -> Path:
        return self.root / str(work_id)

    async def has_custom_cover(self, work_id: int) -> bool:
        return await asyncio.to_thread(self.path_for(work_id).is_file)

    async def read_custom_cover(self, work_id: int) -> BinaryIO:
        return await asyncio.to_thread(self.path_for(work_id).open, "rb")

    async def write_custom_cover(self, work_id: int, stream: BinaryIO) -> None:
        await asyncio.to_thread(self._write, work_id, stream)

    def _write(self, work_id: int, stream: BinaryIO) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        dest = self.path_for(work_id)
        tmp = dest.with_name(dest.name + ".tmp")
        try:
            with tmp.open("wb") as f:
                shutil.copyfileobj(stream, f)
            os.replace(tmp, dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("Wrote custom cover %s", dest)
