import os
import shutil
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Test directory for isolated testing
TEST_UPLOAD_DIR = Path("test_uploads").absolute()
TEST_MAX_FILE_SIZE = 64 * 1024

# Override the upload directory and size ceiling before the app starts
from file_sharing_server import config
config.UPLOAD_DIR = str(TEST_UPLOAD_DIR)
config.MAX_FILE_SIZE = TEST_MAX_FILE_SIZE

from file_sharing_server.main import app


@pytest.fixture(autouse=True)
def clean_upload_dir():
    """Start and finish every test with an empty upload directory."""
    shutil.rmtree(TEST_UPLOAD_DIR, ignore_errors=True)
    yield
    shutil.rmtree(TEST_UPLOAD_DIR, ignore_errors=True)


@pytest.fixture
def client():
    # Entering the client runs the lifespan, which scans TEST_UPLOAD_DIR
    with TestClient(app) as test_client:
        yield test_client


def upload(client, *files):
    """Upload (filename, content) pairs in a single request."""
    parts = [("files", (name, content, "application/octet-stream")) for name, content in files]
    return client.post("/api/upload", files=parts)


def stored_names():
    return sorted(p.name for p in TEST_UPLOAD_DIR.iterdir())


def test_index_page(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "<html" in response.text


def test_upload_list_download_delete(client):
    """Test the full lifecycle of a single file."""
    content = os.urandom(1024)

    # Upload
    response = upload(client, ("data.bin", content))
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert len(body["files"]) == 1
    record = body["files"][0]
    assert record["name"] == "data.bin"
    assert record["size"] == len(content)
    assert record["mimeType"] == "application/octet-stream"
    assert set(record) == {"id", "name", "size", "mimeType", "uploadedAt"}
    assert (TEST_UPLOAD_DIR / "data.bin").read_bytes() == content

    # List
    response = client.get("/api/files")
    assert response.status_code == 200
    assert response.json() == [record]

    # Download
    response = client.get("/api/download/data.bin")
    assert response.status_code == 200
    assert response.content == content
    assert response.headers["content-disposition"] == 'attachment; filename="data.bin"'

    # Delete
    response = client.delete(f"/api/files/{record['id']}")
    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert stored_names() == []
    assert client.get("/api/files").json() == []


def test_multiple_parts_in_one_request(client):
    response = upload(client, ("one.txt", b"first"), ("two.json", b"{}"))
    assert response.status_code == 200

    files = response.json()["files"]
    assert [f["name"] for f in files] == ["one.txt", "two.json"]
    assert files[0]["mimeType"] == "text/plain"
    assert files[1]["mimeType"] == "application/json"
    assert stored_names() == ["one.txt", "two.json"]


def test_duplicate_name_gets_id_suffix(client):
    first = upload(client, ("a.txt", b"first")).json()["files"][0]
    second = upload(client, ("a.txt", b"second")).json()["files"][0]

    assert first["id"] != second["id"]
    assert first["name"] == "a.txt"
    assert second["name"] == f"a_{second['id'][:8]}.txt"
    assert (TEST_UPLOAD_DIR / "a.txt").read_bytes() == b"first"
    assert (TEST_UPLOAD_DIR / second["name"]).read_bytes() == b"second"


def test_filename_is_sanitized(client):
    response = upload(client, ("my report (final)#1.pdf", b"%PDF"))
    record = response.json()["files"][0]
    assert record["name"] == "my report _final__1.pdf"
    assert record["mimeType"] == "application/pdf"


def test_part_without_filename_gets_generated_name(client):
    response = client.post(
        "/api/upload",
        data={"note": "plain form field"},
        files=[("files", ("a.txt", b"x", "text/plain"))],
    )
    assert response.status_code == 200

    names = [f["name"] for f in response.json()["files"]]
    assert "a.txt" in names
    generated = [name for name in names if name != "a.txt"]
    assert len(generated) == 1
    assert generated[0].startswith("upload_")
    assert (TEST_UPLOAD_DIR / generated[0]).read_bytes() == b"plain form field"


def test_list_is_most_recent_first(client):
    upload(client, ("older.txt", b"1"))
    upload(client, ("newer.txt", b"2"))

    names = [f["name"] for f in client.get("/api/files").json()]
    assert names == ["newer.txt", "older.txt"]


def test_upload_too_large(client):
    """A part larger than the ceiling is rejected and leaves nothing behind."""
    content = os.urandom(TEST_MAX_FILE_SIZE + 1)

    response = upload(client, ("big.bin", content))
    assert response.status_code == 413
    assert "error" in response.json()
    assert stored_names() == []
    assert client.get("/api/files").json() == []


def test_upload_too_large_stops_later_parts(client):
    content = os.urandom(TEST_MAX_FILE_SIZE * 2)

    response = upload(client, ("big.bin", content), ("small.txt", b"never stored"))
    assert response.status_code == 413
    assert stored_names() == []
    assert client.get("/api/files").json() == []


def test_upload_exactly_at_ceiling(client):
    content = os.urandom(TEST_MAX_FILE_SIZE)

    response = upload(client, ("limit.bin", content))
    assert response.status_code == 200
    assert response.json()["files"][0]["size"] == TEST_MAX_FILE_SIZE


def test_upload_with_no_parts(client):
    response = client.post(
        "/api/upload",
        content=b"--B--\r\n",
        headers={"content-type": "multipart/form-data; boundary=B"},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "files": []}


def test_upload_truncated_body(client):
    """A body cut off inside a part is rejected and leaves nothing behind."""
    body = (
        b"--B\r\n"
        b'Content-Disposition: form-data; name="f"; filename="t.txt"\r\n'
        b"\r\n"
        b"abc"
    )
    response = client.post(
        "/api/upload",
        content=body,
        headers={"content-type": "multipart/form-data; boundary=B"},
    )
    assert response.status_code == 400
    assert "error" in response.json()
    assert stored_names() == []
    assert client.get("/api/files").json() == []

    # The name is free for the next upload
    record = upload(client, ("t.txt", b"complete")).json()["files"][0]
    assert record["name"] == "t.txt"


def test_upload_requires_multipart(client):
    response = client.post("/api/upload", content=b"raw", headers={"content-type": "application/json"})
    assert response.status_code == 400
    assert "error" in response.json()


def test_delete_twice(client):
    record = upload(client, ("a.txt", b"a")).json()["files"][0]
    upload(client, ("b.txt", b"b"))

    response = client.delete(f"/api/files/{record['id']}")
    assert response.status_code == 200
    remaining = client.get("/api/files").json()
    assert [f["name"] for f in remaining] == ["b.txt"]

    # Second delete of the same id
    response = client.delete(f"/api/files/{record['id']}")
    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}
    assert client.get("/api/files").json() == remaining


def test_delete_unknown_id(client):
    upload(client, ("a.txt", b"a"))
    before = client.get("/api/files").json()

    response = client.delete("/api/files/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}
    assert client.get("/api/files").json() == before


def test_delete_when_file_already_gone(client):
    """The record is removed even if its file vanished from disk."""
    record = upload(client, ("a.txt", b"a")).json()["files"][0]
    (TEST_UPLOAD_DIR / "a.txt").unlink()

    response = client.delete(f"/api/files/{record['id']}")
    assert response.status_code == 200
    assert client.get("/api/files").json() == []


def test_download_missing_file(client):
    response = client.get("/api/download/never-uploaded.txt")
    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}


def test_download_content_type(client):
    upload(client, ("notes.txt", b"hello"))

    response = client.get("/api/download/notes.txt")
    assert response.status_code == 200
    assert response.content == b"hello"
    assert response.headers["content-type"].startswith("text/plain")


def test_restart_loads_existing_files():
    """Files already on disk are listed after startup, newest first."""
    TEST_UPLOAD_DIR.mkdir(parents=True)
    now = time.time()
    for index, name in enumerate(["old.txt", "middle.png", "new.bin"]):
        path = TEST_UPLOAD_DIR / name
        path.write_bytes(b"x" * (index + 1))
        os.utime(path, (now - 300 + index * 100, now - 300 + index * 100))
    (TEST_UPLOAD_DIR / ".hidden").write_bytes(b"secret")
    (TEST_UPLOAD_DIR / "subdir").mkdir()

    with TestClient(app) as client:
        files = client.get("/api/files").json()

    assert [f["name"] for f in files] == ["new.bin", "middle.png", "old.txt"]
    assert [f["size"] for f in files] == [3, 2, 1]
    assert files[1]["mimeType"] == "image/png"
    assert len({f["id"] for f in files}) == 3


def test_cors_is_permissive(client):
    response = client.get("/api/files", headers={"Origin": "http://example.com"})
    assert response.headers["access-control-allow-origin"] == "*"


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
