"""Streaming multipart ingestion.

The request body is parsed chunk by chunk. Bytes of the accepted file part
travel through a bounded queue into ``BlobStore.put``, which runs as its own
task: a slow blob service throttles the parser, and a failure on either side
cancels the other. Size and type limits are enforced while the body is still
arriving.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from filedrop.blobstore import BlobStore
from filedrop.errors import BadRequest, FileTooLarge, InvalidFileType, NoFileReceived, UploadFailed

logger = logging.getLogger(__name__)

FILE_FIELD = "file"
DEFAULT_FILENAME = "upload"
DEFAULT_MIME = "application/octet-stream"


@dataclass(frozen=True)
class UploadConstraints:
    allowed_mime_types: frozenset[str]
    max_bytes: int


@dataclass(frozen=True)
class IngestResult:
    cid: str
    filename: str
    mime: str
    size: int


class _PartReader:
    """Turns ``MultipartParser`` callbacks into a list of messages per chunk.

    Messages are ``("headers", dict)``, ``("data", bytes)`` and ``("end", None)``.
    """

    def __init__(self, boundary: bytes):
        self._messages: list[tuple[str, object]] = []
        self._headers: dict[str, str] = {}
        self._field = b""
        self._value = b""
        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": self._on_part_begin,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
            },
        )

    def _on_part_begin(self) -> None:
        self._headers = {}

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers[self._field.decode("latin-1").lower()] = self._value.decode("latin-1")
        self._field = b""
        self._value = b""

    def _on_headers_finished(self) -> None:
        self._messages.append(("headers", self._headers))

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        if end > start:
            self._messages.append(("data", data[start:end]))

    def _on_part_end(self) -> None:
        self._messages.append(("end", None))

    def _drain(self) -> list[tuple[str, object]]:
        messages, self._messages = self._messages, []
        return messages

    def feed(self, chunk: bytes) -> list[tuple[str, object]]:
        self._parser.write(chunk)
        return self._drain()

    def finish(self) -> list[tuple[str, object]]:
        self._parser.finalize()
        return self._drain()


class _IngestRun:
    """State of one ``ingest`` call: the producer side of the pipe."""

    def __init__(self, blobs: BlobStore, constraints: UploadConstraints, queue_size: int):
        self.blobs = blobs
        self.constraints = constraints
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=queue_size)
        self.upload: asyncio.Task | None = None
        self.filename = ""
        self.mime = ""
        self.size = 0
        self.receiving = False
        self.complete = False

    async def dispatch(self, messages: list[tuple[str, object]]) -> None:
        for kind, value in messages:
            if kind == "headers":
                self.on_headers(value)
            elif kind == "data":
                await self.on_data(value)
            else:
                await self.on_part_end()

    def on_headers(self, headers: dict[str, str]) -> None:
        self.receiving = False
        if self.upload is not None:
            return

        _, options = parse_options_header(headers.get("content-disposition", ""))
        name = options.get(b"name", b"").decode("utf-8", "replace")
        filename = options.get(b"filename")
        if name != FILE_FIELD or filename is None:
            return

        mime, _ = parse_options_header(headers.get("content-type", ""))
        self.filename = filename.decode("utf-8", "replace") or DEFAULT_FILENAME
        self.mime = mime.decode("latin-1").lower() or DEFAULT_MIME
        if self.mime not in self.constraints.allowed_mime_types:
            logger.info("Rejected upload %r with type %s", self.filename, self.mime)
            raise InvalidFileType()

        self.receiving = True
        self.upload = asyncio.create_task(
            self.blobs.put(self._chunks(), filename=self.filename, content_type=self.mime)
        )

    async def on_data(self, data: bytes) -> None:
        if not self.receiving:
            return
        self.size += len(data)
        if self.size > self.constraints.max_bytes:
            logger.info("Rejected upload %r: more than %d bytes", self.filename, self.constraints.max_bytes)
            raise FileTooLarge()
        await self._send(data)

    async def on_part_end(self) -> None:
        if not self.receiving:
            return
        self.receiving = False
        self.complete = True
        await self._send(None)

    async def _chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.queue.get()
            if chunk is None:
                return
            yield chunk

    async def _send(self, item: bytes | None) -> None:
        put = asyncio.ensure_future(self.queue.put(item))
        done, _ = await asyncio.wait({put, self.upload}, return_when=asyncio.FIRST_COMPLETED)
        if put in done:
            return
        put.cancel()
        if self.upload.cancelled():
            raise UploadFailed("Upload cancelled")
        exc = self.upload.exception()
        if exc is None:
            raise UploadFailed("Upload failed: blob service stopped reading")
        if isinstance(exc, UploadFailed):
            raise exc
        raise UploadFailed(f"Upload failed: {exc}") from exc

    async def result(self) -> IngestResult:
        if self.upload is None:
            raise NoFileReceived()
        if not self.complete:
            raise BadRequest("Upload body ended before the file was complete")
        try:
            cid = await self.upload
        except UploadFailed:
            raise
        except Exception as exc:
            raise UploadFailed(f"Upload failed: {exc}") from exc
        if not cid:
            raise UploadFailed("Upload failed: missing CID")
        return IngestResult(cid=cid, filename=self.filename, mime=self.mime, size=self.size)

    async def abort(self) -> None:
        if self.upload is None:
            return
        if not self.upload.done():
            self.upload.cancel()
        await asyncio.gather(self.upload, return_exceptions=True)


class UploadIngestor:
    def __init__(self, blobs: BlobStore, *, queue_size: int = 8):
        self.blobs = blobs
        self.queue_size = queue_size

    @staticmethod
    def boundary(content_type: str) -> bytes:
        ctype, options = parse_options_header(content_type)
        boundary = options.get(b"boundary")
        if ctype.lower() != b"multipart/form-data" or not boundary:
            raise BadRequest("Invalid content type")
        return boundary

    async def ingest(
        self,
        body: AsyncIterator[bytes],
        content_type: str,
        constraints: UploadConstraints,
    ) -> IngestResult:
        """
        Stream the first ``file`` part of a multipart body into the blob store.

        Args:
            body: The raw request body, chunk by chunk
            content_type: The request's Content-Type header, with its boundary
            constraints: Allowed mime types and the byte ceiling

        Returns:
            Content id, filename, mime type and byte count of the stored file

        Raises:
            BadRequest: Not a multipart body, or the body is malformed/truncated
            InvalidFileType: The file part's type is not allowed
            FileTooLarge: More than ``max_bytes`` arrived
            NoFileReceived: The body had no ``file`` part
            UploadFailed: The blob service failed
        """
        reader = _PartReader(self.boundary(content_type))
        run = _IngestRun(self.blobs, constraints, self.queue_size)
        try:
            try:
                async for chunk in body:
                    if not chunk:
                        continue
                    await run.dispatch(reader.feed(chunk))
                await run.dispatch(reader.finish())
            except MultipartParseError as exc:
                raise BadRequest("Malformed multipart body") from exc
            return await run.result()
        except BaseException:
            await run.abort()
            raise
