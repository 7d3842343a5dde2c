"""Content-addressed blob backends.

``put`` consumes an async byte stream and returns the content id (CID) of
what it stored. A ``put`` that is cancelled or fails part-way must not
leave a retrievable blob behind.
"""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import AsyncIterator, Protocol
from uuid import uuid4

import httpx

from filedrop.errors import NotFound, StorageUnavailable, UploadFailed

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class BlobStore(Protocol):
    async def init(self) -> None: ...

    async def put(self, chunks: AsyncIterator[bytes], *, filename: str, content_type: str) -> str: ...

    async def get(self, cid: str) -> AsyncIterator[bytes]: ...

    async def delete(self, cid: str) -> None: ...

    async def aclose(self) -> None: ...


class InMemoryBlobStore:
    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    async def init(self) -> None:
        return None

    async def put(self, chunks: AsyncIterator[bytes], *, filename: str, content_type: str) -> str:
        digest = hashlib.sha256()
        buffer = bytearray()
        async for chunk in chunks:
            digest.update(chunk)
            buffer.extend(chunk)
            await asyncio.sleep(0)
        cid = digest.hexdigest()
        self.blobs[cid] = bytes(buffer)
        return cid

    async def get(self, cid: str) -> AsyncIterator[bytes]:
        if cid not in self.blobs:
            raise NotFound("File not found")
        return self._iter(self.blobs[cid])

    async def _iter(self, data: bytes) -> AsyncIterator[bytes]:
        for offset in range(0, len(data), CHUNK_SIZE):
            yield data[offset : offset + CHUNK_SIZE]

    async def delete(self, cid: str) -> None:
        await asyncio.sleep(0)
        self.blobs.pop(cid, None)

    async def aclose(self) -> None:
        return None


class LocalBlobStore:
    """Blobs on local disk, one file per sha256 content id.

    Bytes land in a ``.partial`` file first and are renamed into place only
    once the stream is complete.
    """

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)
        self.partial_dir = self.root / ".partial"

    async def init(self) -> None:
        await asyncio.to_thread(self.partial_dir.mkdir, parents=True, exist_ok=True)

    def _blob_path(self, cid: str) -> Path:
        if not cid.isalnum():
            raise NotFound("File not found")
        return self.root / cid

    async def put(self, chunks: AsyncIterator[bytes], *, filename: str, content_type: str) -> str:
        await asyncio.to_thread(self.partial_dir.mkdir, parents=True, exist_ok=True)
        partial = self.partial_dir / str(uuid4())
        digest = hashlib.sha256()
        try:
            f = await asyncio.to_thread(partial.open, "wb")
            try:
                async for chunk in chunks:
                    digest.update(chunk)
                    await asyncio.to_thread(f.write, chunk)
            finally:
                f.close()
            cid = digest.hexdigest()
            await asyncio.to_thread(partial.replace, self.root / cid)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return cid

    async def get(self, cid: str) -> AsyncIterator[bytes]:
        path = self._blob_path(cid)
        if not path.exists():
            raise NotFound("File not found")
        return self._iter(path)

    async def _iter(self, path: Path) -> AsyncIterator[bytes]:
        f = await asyncio.to_thread(path.open, "rb")
        with f:
            while True:
                chunk = await asyncio.to_thread(f.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def delete(self, cid: str) -> None:
        await asyncio.to_thread(self._blob_path(cid).unlink, missing_ok=True)

    async def aclose(self) -> None:
        return None


class HttpBlobStore:
    """Client for an R1FS-style blob service.

    Uploads are sent as a streamed multipart body so that the service's
    read rate throttles the producer.
    """

    def __init__(self, base_url: str, *, timeout: float = 30.0, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def init(self) -> None:
        return None

    async def _multipart(
        self, boundary: str, chunks: AsyncIterator[bytes], filename: str, content_type: str
    ) -> AsyncIterator[bytes]:
        safe_name = filename.replace('"', "%22").replace("\r", "").replace("\n", "")
        head = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{safe_name}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        )
        yield head.encode("utf-8")
        async for chunk in chunks:
            yield chunk
        yield f"\r\n--{boundary}--\r\n".encode("utf-8")

    async def put(self, chunks: AsyncIterator[bytes], *, filename: str, content_type: str) -> str:
        boundary = uuid4().hex
        try:
            response = await self._client.post(
                "/add_file",
                content=self._multipart(boundary, chunks, filename, content_type),
                headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
            )
            response.raise_for_status()
            result = response.json().get("result") or {}
        except (httpx.HTTPError, ValueError) as exc:
            raise UploadFailed(f"Upload failed: {exc}") from exc
        cid = result.get("cid")
        if not cid:
            raise UploadFailed("Upload failed: missing CID")
        return cid

    async def get(self, cid: str) -> AsyncIterator[bytes]:
        request = self._client.build_request("GET", "/get_file", params={"cid": cid})
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise StorageUnavailable("Failed to fetch file") from exc
        if response.status_code == 404:
            await response.aclose()
            raise NotFound("File not found")
        if response.is_error:
            await response.aclose()
            raise StorageUnavailable("Failed to fetch file")
        return self._iter(response)

    async def _iter(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        finally:
            await response.aclose()

    async def delete(self, cid: str) -> None:
        try:
            response = await self._client.post(
                "/delete_file",
                json={"cid": cid, "cleanup_local_files": True, "run_gc": False},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageUnavailable(f"Failed to delete {cid}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
