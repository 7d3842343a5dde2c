import asyncio

import pytest
from helpers import IMAGE_TYPES, ChunkedBody, RecordingBlobStore, multipart

from filedrop.blobstore import InMemoryBlobStore
from filedrop.errors import BadRequest, FileTooLarge, InvalidFileType, NoFileReceived, UploadFailed
from filedrop.ingest import UploadConstraints, UploadIngestor

PNG = b"\x89PNG\r\n\x1a\n" + bytes(range(256)) * 8


def constraints(max_bytes: int = 1024 * 1024) -> UploadConstraints:
    return UploadConstraints(allowed_mime_types=IMAGE_TYPES, max_bytes=max_bytes)


class FailingBlobStore(InMemoryBlobStore):
    async def put(self, chunks, *, filename, content_type):
        async for _ in chunks:
            raise RuntimeError("blob service exploded")
        return "never"


class CancellationAwareBlobStore(InMemoryBlobStore):
    def __init__(self):
        super().__init__()
        self.cancelled = False

    async def put(self, chunks, *, filename, content_type):
        try:
            return await super().put(chunks, filename=filename, content_type=content_type)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class StalledBlobStore(InMemoryBlobStore):
    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def put(self, chunks, *, filename, content_type):
        await self.release.wait()
        return await super().put(chunks, filename=filename, content_type=content_type)


@pytest.mark.asyncio
async def test_ingest_streams_file_to_blob_store():
    blobs = RecordingBlobStore()
    data, content_type = multipart(("file", "cat.png", "image/png", PNG))

    result = await UploadIngestor(blobs).ingest(ChunkedBody(data, 100), content_type, constraints())

    assert result.filename == "cat.png"
    assert result.mime == "image/png"
    assert result.size == len(PNG)
    assert blobs.blobs[result.cid] == PNG


@pytest.mark.asyncio
async def test_other_fields_are_ignored_and_only_first_file_is_kept():
    blobs = RecordingBlobStore()
    data, content_type = multipart(
        ("caption", None, None, b"hello"),
        ("avatar", "other.png", "image/png", b"not this one"),
        ("file", "first.jpg", "image/jpeg", b"first"),
        ("file", "second.jpg", "image/jpeg", b"second"),
    )

    result = await UploadIngestor(blobs).ingest(ChunkedBody(data, 7), content_type, constraints())

    assert result.filename == "first.jpg"
    assert blobs.put_calls == 1
    assert list(blobs.blobs.values()) == [b"first"]


@pytest.mark.asyncio
async def test_body_of_exactly_max_bytes_is_accepted():
    blobs = RecordingBlobStore()
    data, content_type = multipart(("file", "edge.png", "image/png", b"x" * 1000))

    result = await UploadIngestor(blobs).ingest(ChunkedBody(data, 64), content_type, constraints(1000))

    assert result.size == 1000


@pytest.mark.asyncio
async def test_one_byte_over_max_is_rejected():
    blobs = RecordingBlobStore()
    data, content_type = multipart(("file", "edge.png", "image/png", b"x" * 1001))

    with pytest.raises(FileTooLarge):
        await UploadIngestor(blobs).ingest(ChunkedBody(data, 64), content_type, constraints(1000))
    assert blobs.blobs == {}


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected_before_body_is_read():
    blobs = CancellationAwareBlobStore()
    data, content_type = multipart(("file", "huge.tiff", "image/tiff", b"x" * 200_000))
    body = ChunkedBody(data, 512)

    with pytest.raises(FileTooLarge):
        await UploadIngestor(blobs).ingest(body, content_type, constraints(4096))

    assert body.sent < len(data) // 10
    assert blobs.cancelled
    assert blobs.blobs == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("mime", ["text/plain", "image/gif", "application/octet-stream", None])
async def test_disallowed_type_never_reaches_blob_store(mime):
    blobs = RecordingBlobStore()
    data, content_type = multipart(("file", "doc.txt", mime, b"x" * 10_000))
    body = ChunkedBody(data, 256)

    with pytest.raises(InvalidFileType):
        await UploadIngestor(blobs).ingest(body, content_type, constraints())

    assert blobs.put_calls == 0
    assert body.sent < len(data)


@pytest.mark.asyncio
async def test_body_without_file_field():
    blobs = RecordingBlobStore()
    data, content_type = multipart(("caption", None, None, b"just text"))

    with pytest.raises(NoFileReceived):
        await UploadIngestor(blobs).ingest(ChunkedBody(data), content_type, constraints())
    assert blobs.put_calls == 0


@pytest.mark.asyncio
async def test_blob_failure_surfaces_as_upload_failed():
    data, content_type = multipart(("file", "cat.png", "image/png", PNG))

    with pytest.raises(UploadFailed) as excinfo:
        await UploadIngestor(FailingBlobStore()).ingest(ChunkedBody(data, 64), content_type, constraints())
    assert "blob service exploded" in excinfo.value.message


@pytest.mark.asyncio
async def test_truncated_body_cancels_upload():
    blobs = CancellationAwareBlobStore()
    data, content_type = multipart(("file", "cat.png", "image/png", PNG))
    truncated = data[: len(data) // 2]

    with pytest.raises(BadRequest):
        await UploadIngestor(blobs).ingest(ChunkedBody(truncated, 64), content_type, constraints())
    assert blobs.blobs == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("content_type", ["application/json", "multipart/form-data", "text/plain; boundary=x"])
async def test_non_multipart_content_type_is_rejected(content_type):
    with pytest.raises(BadRequest):
        await UploadIngestor(RecordingBlobStore()).ingest(ChunkedBody(b""), content_type, constraints())


@pytest.mark.asyncio
async def test_slow_blob_store_throttles_the_parser():
    blobs = StalledBlobStore()
    payload = b"y" * 20_000
    data, content_type = multipart(("file", "big.png", "image/png", payload))
    body = ChunkedBody(data, 100)
    ingestor = UploadIngestor(blobs, queue_size=2)

    task = asyncio.create_task(ingestor.ingest(body, content_type, constraints()))
    await asyncio.sleep(0.05)
    assert not task.done()
    assert body.sent < 1000

    blobs.release.set()
    result = await asyncio.wait_for(task, timeout=5)
    assert result.size == len(payload)
    assert body.sent == len(data)


@pytest.mark.asyncio
async def test_client_disconnect_cancels_blob_upload():
    blobs = CancellationAwareBlobStore()
    data, content_type = multipart(("file", "cat.png", "image/png", PNG))

    async def disconnecting_body():
        yield data[:300]
        await asyncio.sleep(0)
        raise ConnectionResetError("client went away")

    with pytest.raises(ConnectionResetError):
        await UploadIngestor(blobs).ingest(disconnecting_body(), content_type, constraints())
    assert blobs.cancelled
    assert blobs.blobs == {}
