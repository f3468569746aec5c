"""
Streaming receiver for multipart uploads.

The request body is fed chunk by chunk into a push-style multipart parser,
and each file part is written to disk as its bytes arrive. Nothing is
spooled in memory beyond the chunk currently being handled, regardless of
the upload's size.

Stored files are named after the job identity, never after the
client-supplied filename; the filename only contributes a sanitised
extension.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterable, List, Mapping, Optional, Tuple

import aiofiles
import python_multipart as multipart
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import parse_options_header
from starlette.requests import ClientDisconnect

from .errors import MalformedUpload, StorageError, TransportError, UploadError
from .utils import ensure_directory, safe_extension

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class _Event(Enum):
    PART_BEGIN = 1
    PART_DATA = 2
    PART_END = 3
    HEADER_FIELD = 4
    HEADER_VALUE = 5
    HEADER_END = 6
    HEADERS_FINISHED = 7
    END = 8


@dataclass
class StoredUpload:
    original_filename: str
    path: Path
    content_type: Optional[str]
    size: int


class UploadReceiver:
    """
    Persist the file part of one multipart request.

    A receiver handles exactly one request. If several file parts are sent,
    each one truncates the job's destination and only the last one is kept.

    Attributes:
        directory: Where uploaded originals are stored
        job_id: Identity used to name the stored file
        chunk_size: Largest slice of the body handed to the parser, and so
            the largest single write to disk
    """

    def __init__(self, directory: Path, job_id: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.directory = directory
        self.job_id = job_id
        self.chunk_size = max(1, chunk_size)
        self._events: List[Tuple[_Event, bytes]] = []
        self._header_field = b""
        self._header_value = b""
        self._headers: List[Tuple[bytes, bytes]] = []
        self._file: Any = None
        self._path: Optional[Path] = None
        self._filename: Optional[str] = None
        self._content_type: Optional[str] = None
        self._size = 0
        self._result: Optional[StoredUpload] = None
        self._ended = False

    async def receive(self, headers: Mapping[str, str], stream: AsyncIterable[bytes]) -> StoredUpload:
        """
        Consume the request body and write its file part to disk.

        Raises:
            MalformedUpload: Not a multipart body, a part without a filename,
                or no file part at all
            StorageError: The destination could not be created or written
            TransportError: The client disconnected or the multipart framing
                is broken
        """
        parser = multipart.MultipartParser(self._boundary(headers), self._callbacks())
        try:
            try:
                ensure_directory(self.directory)
            except OSError as exc:
                raise StorageError(f"Could not create upload directory: {exc}", str(self.directory)) from exc

            try:
                async for chunk in stream:
                    for start in range(0, len(chunk), self.chunk_size):
                        self._feed(parser, chunk[start:start + self.chunk_size])
                        await self._handle_events()
            except ClientDisconnect as exc:
                raise TransportError("Client disconnected during upload") from exc

            parser.finalize()
            await self._handle_events()
            if self._file is not None or (self._result is not None and not self._ended):
                raise TransportError("Upload ended before the multipart body was complete")
        except UploadError:
            await self._discard()
            raise

        if self._result is None:
            raise MalformedUpload("Request contained no file part")
        logger.info(f"Saved upload {self._result.original_filename!r} to {self._result.path} ({self._result.size} bytes)")
        return self._result

    @staticmethod
    def _boundary(headers: Mapping[str, str]) -> bytes:
        content_type, options = parse_options_header(headers.get("content-type"))
        if content_type != b"multipart/form-data":
            raise MalformedUpload("Expected a multipart/form-data body")
        boundary = options.get(b"boundary")
        if not boundary:
            raise MalformedUpload("Multipart body has no boundary")
        return boundary

    def _callbacks(self) -> dict:
        def data_event(kind: _Event):
            def callback(data: bytes, start: int, end: int) -> None:
                self._events.append((kind, data[start:end]))

            return callback

        def notify_event(kind: _Event):
            def callback() -> None:
                self._events.append((kind, b""))

            return callback

        return {
            "on_part_begin": notify_event(_Event.PART_BEGIN),
            "on_part_data": data_event(_Event.PART_DATA),
            "on_part_end": notify_event(_Event.PART_END),
            "on_header_field": data_event(_Event.HEADER_FIELD),
            "on_header_value": data_event(_Event.HEADER_VALUE),
            "on_header_end": notify_event(_Event.HEADER_END),
            "on_headers_finished": notify_event(_Event.HEADERS_FINISHED),
            "on_end": notify_event(_Event.END),
        }

    @staticmethod
    def _feed(parser: multipart.MultipartParser, chunk: bytes) -> None:
        try:
            parser.write(chunk)
        except MultipartParseError as exc:
            raise TransportError(f"Malformed multipart framing: {exc}") from exc

    async def _handle_events(self) -> None:
        events = list(self._events)
        self._events.clear()
        for kind, data in events:
            if kind is _Event.PART_BEGIN:
                self._headers = []
                self._header_field = b""
                self._header_value = b""
            elif kind is _Event.HEADER_FIELD:
                self._header_field += data
            elif kind is _Event.HEADER_VALUE:
                self._header_value += data
            elif kind is _Event.HEADER_END:
                self._headers.append((self._header_field.lower(), self._header_value))
                self._header_field = b""
                self._header_value = b""
            elif kind is _Event.HEADERS_FINISHED:
                await self._open_part()
            elif kind is _Event.PART_DATA:
                await self._write(data)
            elif kind is _Event.PART_END:
                await self._close_part()
            elif kind is _Event.END:
                self._ended = True

    async def _open_part(self) -> None:
        headers = dict(self._headers)
        _, options = parse_options_header(headers.get(b"content-disposition"))
        raw_filename = options.get(b"filename")
        # Every part must be a file part carrying a filename, form fields included
        if not raw_filename:
            raise MalformedUpload("Multipart part has no filename")

        self._filename = raw_filename.decode("utf-8", errors="replace")
        content_type = headers.get(b"content-type")
        self._content_type = content_type.decode("latin-1") if content_type else None
        path = self.directory / f"{self.job_id}{safe_extension(self._filename)}"
        if self._result is not None and self._result.path != path:
            self._result.path.unlink(missing_ok=True)
        self._path = path
        self._size = 0
        self._result = None
        logger.info(f"Processing file {self._filename!r} for request {self.job_id}")

        try:
            self._file = await aiofiles.open(self._path, "wb")
        except OSError as exc:
            raise StorageError(f"Could not create {self._path}: {exc}", str(self._path)) from exc

    async def _write(self, data: bytes) -> None:
        if self._file is None:
            return
        try:
            await self._file.write(data)
        except OSError as exc:
            raise StorageError(f"Could not write to {self._path}: {exc}", str(self._path)) from exc
        self._size += len(data)

    async def _close_part(self) -> None:
        if self._file is None:
            return
        file, self._file = self._file, None
        try:
            await file.close()
        except OSError as exc:
            raise StorageError(f"Could not finish writing {self._path}: {exc}", str(self._path)) from exc
        self._result = StoredUpload(
            original_filename=self._filename or "",
            path=self._path,  # type: ignore[arg-type]
            content_type=self._content_type,
            size=self._size,
        )

    async def _discard(self) -> None:
        if self._file is not None:
            file, self._file = self._file, None
            try:
                await file.close()
            except OSError:
                logger.warning(f"Could not close partial upload {self._path}")
        if self._path is not None:
            self._path.unlink(missing_ok=True)
