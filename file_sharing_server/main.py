from contextlib import asynccontextmanager
from pathlib import Path
from typing import List
from urllib.parse import quote

import aiofiles
import aiofiles.os
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse

from file_sharing_server import config
from file_sharing_server.app.models.file_record import FileRecord, SuccessResponse, UploadResponse
from file_sharing_server.app.services.filenames import guess_mime_type
from file_sharing_server.app.services.multipart_reader import MultipartReader, get_boundary
from file_sharing_server.app.services.storage_manager import StorageManager
from file_sharing_server.logger_config import setup_logger

STATIC_DIR = Path(__file__).parent / "static"
INDEX_HTML = (STATIC_DIR / "index.html").read_text(encoding="utf-8")

# Logger setup
logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A failed scan propagates and stops the server before it accepts requests
    app.state.storage_manager = StorageManager(Path(config.UPLOAD_DIR))
    await app.state.storage_manager.initialize()
    yield


app = FastAPI(title="File Sharing Server", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def content_disposition(filename: str) -> str:
    """Attachment header value carrying the literal filename."""
    try:
        filename.encode("latin-1")
    except UnicodeEncodeError:
        fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
    return f'attachment; filename="{filename}"'


@app.get("/", response_class=HTMLResponse)
async def index():
    return HTMLResponse(INDEX_HTML)


@app.post("/api/upload", response_model=UploadResponse)
async def upload_files(request: Request):
    """Store every file part of a multipart/form-data request."""
    storage_manager = request.app.state.storage_manager
    logger.info("Receiving upload request")

    boundary = get_boundary(request.headers.get("content-type"))
    reader = MultipartReader(boundary, request.stream())
    files = await storage_manager.receive_uploads(reader)

    logger.info(f"Upload request stored {len(files)} file(s)")
    return UploadResponse(files=files)


@app.get("/api/files", response_model=List[FileRecord])
async def list_files(request: Request):
    """List stored files, newest first."""
    storage_manager = request.app.state.storage_manager
    return await storage_manager.registry.snapshot()


@app.delete("/api/files/{file_id}", response_model=SuccessResponse)
async def delete_file(file_id: str, request: Request):
    """Delete a file by its id."""
    storage_manager = request.app.state.storage_manager
    logger.info(f"Receiving delete request for file_id: {file_id}")

    record = await storage_manager.delete_file(file_id)
    if record is None:
        raise HTTPException(status_code=404, detail="File not found")

    logger.info(f"Successfully deleted file: {record.name}")
    return SuccessResponse()


@app.get("/api/download/{filename}")
async def download_file(filename: str, request: Request):
    """Download a stored file by its name."""
    storage_manager = request.app.state.storage_manager
    logger.info(f"Receiving download request for filename: {filename}")

    file_path = storage_manager.resolve_download_path(filename)
    if file_path is None or not await aiofiles.os.path.exists(file_path):
        raise HTTPException(status_code=404, detail="File not found")

    try:
        handle = await aiofiles.open(file_path, "rb")
    except OSError as e:
        logger.error(f"Failed to read file {file_path}: {e}")
        raise HTTPException(status_code=500, detail="Failed to read file")

    async def file_iterator():
        try:
            while chunk := await handle.read(config.CHUNK_SIZE):
                yield chunk
        finally:
            await handle.close()

    return StreamingResponse(
        file_iterator(),
        media_type=guess_mime_type(file_path),
        headers={"content-disposition": content_disposition(filename)},
    )


def run():
    host, port = config.parse_bind_addr(config.BIND_ADDR)
    logger.info("Starting File Sharing Server...")
    logger.info(f"Upload directory: {config.UPLOAD_DIR}")
    logger.info(f"Running on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
