import asyncio
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, List, Optional

import aiofiles.os

from file_sharing_server.app.models.file_record import FileRecord
from file_sharing_server.app.services.filenames import guess_mime_type
from file_sharing_server.logger_config import setup_logger

logger = setup_logger()


class FileRegistry:
    """In-memory list of stored files, newest first.

    A single lock serializes every operation. The lock is never held while
    touching the disk.
    """

    def __init__(self):
        self._files: Deque[FileRecord] = deque()
        self._lock = asyncio.Lock()

    async def initialize(self, upload_dir: Path):
        """Rebuild the registry from the files already in upload_dir.

        Dotfiles and anything that is not a regular file are skipped. Any
        failure to read file metadata is fatal: a RuntimeError is raised and
        the registry is left untouched.
        """
        logger.info(f"Scanning upload directory: {upload_dir}")
        records = []
        try:
            for path in upload_dir.iterdir():
                if path.name.startswith(".") or not path.is_file():
                    continue
                stat = await aiofiles.os.stat(path)
                records.append(FileRecord(
                    id=str(uuid.uuid4()),
                    name=path.name,
                    size=stat.st_size,
                    mime_type=guess_mime_type(path),
                    uploaded_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))
        except OSError as e:
            logger.error(f"Failed to read existing uploads in {upload_dir}: {e}", exc_info=True)
            raise RuntimeError(f"Cannot load existing uploads from {upload_dir}: {e}") from e

        records.sort(key=lambda record: record.uploaded_at, reverse=True)

        async with self._lock:
            self._files = deque(records)
        logger.info(f"Loaded {len(records)} existing files")

    async def insert_front(self, record: FileRecord):
        async with self._lock:
            self._files.appendleft(record)

    async def remove(self, file_id: str) -> Optional[FileRecord]:
        """Remove and return the record with the given id, or None."""
        async with self._lock:
            for index, record in enumerate(self._files):
                if record.id == file_id:
                    del self._files[index]
                    return record
        return None

    async def snapshot(self) -> List[FileRecord]:
        async with self._lock:
            return list(self._files)

    def __len__(self) -> int:
        return len(self._files)
