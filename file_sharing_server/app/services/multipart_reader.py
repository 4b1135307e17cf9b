from collections import deque
from dataclasses import dataclass
from email.message import Message
from email.utils import collapse_rfc2231_value
from typing import AsyncIterator, Deque, Dict, Optional, Tuple, Union

from fastapi import HTTPException
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

# Event kinds produced by MultipartReader
PART_HEADERS = "headers"
PART_DATA = "data"
PART_END = "end"

Event = Tuple[str, Union["PartHeaders", bytes, None]]


@dataclass
class PartHeaders:
    headers: Dict[str, str]
    name: Optional[str] = None
    filename: Optional[str] = None


def _decode(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


def disposition_params(value: str) -> Dict[str, str]:
    """Parameters of a Content-Disposition header, values exactly as sent.

    parse_options_header cuts Windows paths down to their last component,
    so the filename is read with the email parser instead.
    """
    message = Message()
    message["content-disposition"] = value
    params = {}
    for key, param_value in message.get_params(header="content-disposition")[1:]:
        params[key.lower()] = collapse_rfc2231_value(param_value)
    return params


def get_boundary(content_type: Optional[str]) -> bytes:
    """Extract the boundary of a multipart/form-data content type."""
    if not content_type:
        raise HTTPException(status_code=400, detail="Missing Content-Type header")
    media_type, params = parse_options_header(content_type)
    boundary = params.get(b"boundary")
    if media_type.lower().strip() != b"multipart/form-data" or not boundary:
        raise HTTPException(status_code=400, detail="Expected multipart/form-data with a boundary")
    return boundary


class MultipartReader:
    """Incremental multipart/form-data reader.

    Feeds raw body chunks to python-multipart and yields events as soon as
    each chunk is parsed, so part bodies are never held in memory whole:

        ("headers", PartHeaders)  once per part, before its data
        ("data", bytes)           zero or more times per part
        ("end", None)             once per part
    """

    def __init__(self, boundary: bytes, stream: AsyncIterator[bytes]):
        self._stream = stream
        self._events: Deque[Event] = deque()
        self._headers: Dict[str, str] = {}
        self._header_field = b""
        self._header_value = b""
        self._parser = MultipartParser(boundary, {
            "on_part_begin": self._on_part_begin,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
        })

    def _on_part_begin(self):
        self._headers = {}

    def _on_header_field(self, data: bytes, start: int, end: int):
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int):
        self._header_value += data[start:end]

    def _on_header_end(self):
        self._headers[_decode(self._header_field).lower()] = _decode(self._header_value)
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self):
        part = PartHeaders(headers=self._headers)
        disposition = self._headers.get("content-disposition")
        if disposition:
            params = disposition_params(disposition)
            part.name = params.get("name")
            part.filename = params.get("filename")
        self._events.append((PART_HEADERS, part))

    def _on_part_data(self, data: bytes, start: int, end: int):
        if end > start:
            self._events.append((PART_DATA, bytes(data[start:end])))

    def _on_part_end(self):
        self._events.append((PART_END, None))

    async def __aiter__(self) -> AsyncIterator[Event]:
        try:
            async for chunk in self._stream:
                if chunk:
                    self._parser.write(chunk)
                while self._events:
                    yield self._events.popleft()
            self._parser.finalize()
        except MultipartParseError as e:
            raise HTTPException(status_code=400, detail=f"Malformed multipart body: {e}")
        while self._events:
            yield self._events.popleft()
