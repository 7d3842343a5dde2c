import logging
from typing import AsyncIterator

from filedrop.blobstore import BlobStore
from filedrop.errors import Conflict, Forbidden, NotFound, QuotaExceeded, ServiceError
from filedrop.ingest import IngestResult, UploadConstraints, UploadIngestor
from filedrop.models import FileRecord, Quota, SessionPayload, UploadEvent
from filedrop.quota import LockPool, QuotaLedger
from filedrop.repository import RecordStore, utc_now

logger = logging.getLogger(__name__)


async def discard_blob(blobs: BlobStore, cid: str) -> None:
    """Best-effort blob removal; metadata cleanup must not depend on it."""
    try:
        await blobs.delete(cid)
    except (ServiceError, OSError) as exc:
        logger.warning("Could not delete blob %s: %s", cid, exc)


class UploadOrchestrator:
    """Quota-gated upload: check, stream, commit, re-check, compensate.

    The key-value store offers no transactions, so two concurrent uploads by
    the same user can both pass the first quota check. Whichever one pushes
    ``used`` past ``max`` on commit undoes its own work (counter, blob,
    record) and reports ``QuotaExceeded``.

    A content id has a single owner. Commits for the same content id are
    serialized: re-uploading one's own file returns the existing record
    without spending quota, and content already owned by someone else is
    refused with ``Conflict``.
    """

    def __init__(
        self,
        *,
        ingestor: UploadIngestor,
        ledger: QuotaLedger,
        records: RecordStore,
        blobs: BlobStore,
        constraints: UploadConstraints,
        node_id: str,
    ):
        self.ingestor = ingestor
        self.ledger = ledger
        self.records = records
        self.blobs = blobs
        self.constraints = constraints
        self.node_id = node_id
        self.commit_locks = LockPool()

    async def upload(
        self, username: str, body: AsyncIterator[bytes], content_type: str
    ) -> tuple[FileRecord, Quota]:
        quota = await self.ledger.get(username)
        if quota.used >= quota.max:
            raise QuotaExceeded()

        result = await self.ingestor.ingest(body, content_type, self.constraints)
        async with self.commit_locks.lock_for(result.cid):
            return await self._commit(username, result)

    async def _commit(self, username: str, result: IngestResult) -> tuple[FileRecord, Quota]:
        existing = await self.records.get_file_record(result.cid)
        if existing is not None:
            if existing.owner != username:
                logger.info("Refused %s for %s: content already owned by %s", result.cid, username, existing.owner)
                raise Conflict("This file has already been uploaded by another user")
            logger.info("Duplicate upload of %s by %s", result.cid, username)
            return existing, await self.ledger.get(username)

        now = utc_now()
        record = FileRecord(
            cid=result.cid,
            owner=username,
            filename=result.filename or result.cid,
            mime=result.mime,
            size=result.size,
            created_at=now,
            node_id=self.node_id,
        )
        try:
            await self.records.save_file_record(record)
            updated = await self.ledger.increment(username, 1)
        except BaseException:
            logger.warning("Commit of %s for %s failed; releasing it", record.cid, username)
            await self._release(record.cid)
            raise

        if updated.used > updated.max:
            logger.warning(
                "Quota overrun for %s (%d/%d); rolling back %s", username, updated.used, updated.max, record.cid
            )
            await self.ledger.increment(username, -1)
            await self._release(record.cid)
            raise QuotaExceeded()

        await self.records.add_upload_event(
            UploadEvent(
                user=username,
                filename=record.filename,
                cid=record.cid,
                node_id=self.node_id,
                created_at=now,
            )
        )
        logger.info("Stored %s (%d bytes) for %s as %s", record.filename, record.size, username, record.cid)
        return record, updated

    async def _release(self, cid: str) -> None:
        try:
            await self.records.remove_file_record(cid)
        except ServiceError as exc:
            logger.warning("Could not remove record %s: %s", cid, exc)
        await discard_blob(self.blobs, cid)

    async def delete(self, session: SessionPayload, cid: str) -> Quota:
        record = await self.records.get_file_record(cid)
        if not record:
            raise NotFound("File not found")
        if record.owner != session.username and session.role != "admin":
            raise Forbidden()

        await self.records.remove_file_record(cid)
        quota = await self.ledger.increment(record.owner, -1)
        await discard_blob(self.blobs, cid)
        logger.info("Deleted %s owned by %s", cid, record.owner)
        return quota
