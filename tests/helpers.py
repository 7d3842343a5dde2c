import asyncio

from filedrop.blobstore import InMemoryBlobStore
from filedrop.ingest import UploadConstraints, UploadIngestor
from filedrop.uploads import UploadOrchestrator

BOUNDARY = "----filedropboundary"
IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/tiff"})


def multipart(*parts, boundary: str = BOUNDARY) -> tuple[bytes, str]:
    """Build a multipart body from ``(name, filename, content_type, data)`` tuples."""
    body = b""
    for name, filename, content_type, data in parts:
        disposition = f'form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        head = f"--{boundary}\r\nContent-Disposition: {disposition}\r\n"
        if content_type:
            head += f"Content-Type: {content_type}\r\n"
        body += head.encode() + b"\r\n" + data + b"\r\n"
    body += f"--{boundary}--\r\n".encode()
    return body, f"multipart/form-data; boundary={boundary}"


class ChunkedBody:
    """Async request body that counts how many bytes the consumer pulled."""

    def __init__(self, data: bytes, chunk_size: int = 256):
        self.data = data
        self.chunk_size = chunk_size
        self.sent = 0

    async def __aiter__(self):
        for offset in range(0, len(self.data), self.chunk_size):
            chunk = self.data[offset : offset + self.chunk_size]
            self.sent += len(chunk)
            yield chunk
            await asyncio.sleep(0)


class RecordingBlobStore(InMemoryBlobStore):
    def __init__(self):
        super().__init__()
        self.put_calls = 0
        self.deleted: list[str] = []

    async def put(self, chunks, *, filename, content_type):
        self.put_calls += 1
        return await super().put(chunks, filename=filename, content_type=content_type)

    async def delete(self, cid):
        self.deleted.append(cid)
        await super().delete(cid)


def make_orchestrator(ledger, records, blobs, *, max_bytes: int = 1024 * 1024) -> UploadOrchestrator:
    return UploadOrchestrator(
        ingestor=UploadIngestor(blobs, queue_size=2),
        ledger=ledger,
        records=records,
        blobs=blobs,
        constraints=UploadConstraints(allowed_mime_types=IMAGE_TYPES, max_bytes=max_bytes),
        node_id="node-test",
    )


