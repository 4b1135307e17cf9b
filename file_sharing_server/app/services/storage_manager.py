import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles
import aiofiles.os
from fastapi import HTTPException

from file_sharing_server import config
from file_sharing_server.app.models.file_record import FileRecord
from file_sharing_server.app.services.file_registry import FileRegistry
from file_sharing_server.app.services.filenames import guess_mime_type, sanitize_filename
from file_sharing_server.app.services.multipart_reader import (
    PART_DATA,
    PART_END,
    PART_HEADERS,
    MultipartReader,
)
from file_sharing_server.logger_config import setup_logger

logger = setup_logger()


class StorageManager:
    def __init__(self, upload_dir: Path, max_file_size: Optional[int] = None):
        self.upload_dir = Path(upload_dir)
        self.max_file_size = config.MAX_FILE_SIZE if max_file_size is None else max_file_size
        self.registry = FileRegistry()

    async def initialize(self):
        """Create the upload directory and load the files already in it."""
        logger.info("Initializing storage manager...")
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Upload directory created/verified: {self.upload_dir}")
        await self.registry.initialize(self.upload_dir)

    def working_filename(self, client_filename: Optional[str]) -> str:
        """Sanitized client filename, or a generated one when nothing usable was sent."""
        if client_filename:
            filename = sanitize_filename(client_filename)
            if filename not in ("", ".", ".."):
                return filename
        return f"upload_{uuid.uuid4()}"

    def disambiguated_path(self, filename: str, file_id: str) -> Path:
        """Path for filename with the first 8 characters of file_id before the extension.

        The extension is whatever follows the last dot, possibly empty
        ("a." keeps its trailing dot). A single leading dot is part of the stem.
        """
        stem, dot, extension = filename.rpartition(".")
        if not stem:
            stem, dot, extension = filename, "", ""
        return self.upload_dir / f"{stem}_{file_id[:8]}{dot}{extension}"

    async def create_destination(self, filename: str, file_id: str) -> Tuple[Path, object]:
        """Create the file that an upload part is written to.

        A name already on disk gets the id suffix. Files are created
        exclusively, so a concurrent upload that wins the race for the plain
        name also pushes this one to the suffixed name.
        """
        path = self.upload_dir / filename
        if await aiofiles.os.path.exists(path):
            path = self.disambiguated_path(filename, file_id)
        try:
            try:
                handle = await aiofiles.open(path, "xb")
            except FileExistsError:
                fallback = self.disambiguated_path(filename, file_id)
                if fallback == path:
                    raise
                path = fallback
                handle = await aiofiles.open(path, "xb")
        except OSError as e:
            logger.error(f"Failed to create file {path}: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to create file: {e}")
        return path, handle

    async def discard_partial(self, handle, path: Path):
        """Close and delete a partially written file. Failures are only logged."""
        try:
            await handle.close()
        except OSError as e:
            logger.warning(f"Failed to close partial file {path}: {e}")
        try:
            await aiofiles.os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial file {path}: {e}")

    async def receive_uploads(self, reader: MultipartReader) -> List[FileRecord]:
        """Stream every part of a multipart request to disk.

        Each completed part is added to the front of the registry. The first
        failing part aborts the request; its partial file is removed and
        later parts are not read.
        """
        uploaded: List[FileRecord] = []
        handle = None
        path = None
        file_id = None
        total_size = 0

        try:
            async for event, payload in reader:
                if event == PART_HEADERS:
                    filename = self.working_filename(payload.filename)
                    file_id = str(uuid.uuid4())
                    path, handle = await self.create_destination(filename, file_id)
                    total_size = 0
                    logger.debug(f"Receiving part into {path}")

                elif event == PART_DATA:
                    total_size += len(payload)
                    if total_size > self.max_file_size:
                        logger.warning(f"Upload {path.name} exceeded {self.max_file_size} bytes, aborting")
                        raise HTTPException(
                            status_code=413,
                            detail=f"File too large (max {self.max_file_size} bytes)",
                        )
                    try:
                        await handle.write(payload)
                    except OSError as e:
                        logger.error(f"Write error for {path}: {e}", exc_info=True)
                        raise HTTPException(status_code=500, detail=f"Write error: {e}")

                elif event == PART_END:
                    try:
                        await handle.close()
                    except OSError as e:
                        logger.error(f"Write error for {path}: {e}", exc_info=True)
                        raise HTTPException(status_code=500, detail=f"Write error: {e}")
                    handle = None

                    record = FileRecord(
                        id=file_id,
                        name=path.name,
                        size=total_size,
                        mime_type=guess_mime_type(path),
                        uploaded_at=datetime.now(timezone.utc),
                    )
                    await self.registry.insert_front(record)
                    uploaded.append(record)
                    logger.info(f"Stored upload {record.name} ({record.size} bytes)")

            if handle is not None:
                logger.warning(f"Request body ended inside part {path.name}")
                raise HTTPException(status_code=400, detail="Malformed multipart body: unexpected end of body")
        except BaseException:
            if handle is not None:
                await self.discard_partial(handle, path)
            raise

        return uploaded

    async def delete_file(self, file_id: str) -> Optional[FileRecord]:
        """Remove a record and, best effort, its file. Returns None for an unknown id."""
        record = await self.registry.remove(file_id)
        if record is None:
            return None

        try:
            await aiofiles.os.remove(self.upload_dir / record.name)
        except OSError as e:
            logger.warning(f"Could not delete file {record.name} for {file_id}: {e}")
        return record

    def resolve_download_path(self, filename: str) -> Optional[Path]:
        """Path of filename inside the upload directory, or None if it points elsewhere."""
        path = self.upload_dir / filename
        if Path(os.path.abspath(path)).parent != Path(os.path.abspath(self.upload_dir)):
            return None
        return path
