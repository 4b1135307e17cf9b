"""Configuration settings for the file sharing server."""
import os
from typing import Tuple

# Storage limits
MAX_FILE_SIZE = 10 * 1024 * 1024 * 1024  # 10 GiB per uploaded file
CHUNK_SIZE = 64 * 1024  # download read size

# Network
BIND_ADDR = os.getenv("BIND_ADDR", "0.0.0.0:8080")
CORS_ALLOW_ORIGINS = ["*"]

# Directory paths
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
LOGS_DIR = os.getenv("LOGS_DIR", "./logs")


def parse_bind_addr(value: str) -> Tuple[str, int]:
    """Split a ``host:port`` bind address."""
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Invalid bind address: {value!r}")
    return host.strip("[]"), int(port)
