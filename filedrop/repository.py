import asyncio
import json
import logging
import time
from datetime import datetime, timezone

from filedrop.kvstore import KVStore
from filedrop.models import FileRecord, UploadEvent

logger = logging.getLogger(__name__)

FILES_KEY = "files"
EVENTS_KEY = "events"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RecordStore:
    """File metadata and the upload event log.

    Removal overwrites the value with an empty string; readers skip those
    tombstones.
    """

    def __init__(self, kv: KVStore):
        self.kv = kv

    @staticmethod
    def _parse_file(cid: str, raw: str | None) -> FileRecord | None:
        if not raw:
            return None
        try:
            return FileRecord.model_validate({**json.loads(raw), "cid": cid})
        except ValueError:
            logger.warning("Skipping unreadable file record %s", cid)
            return None

    @staticmethod
    def _parse_event(key: str, raw: str | None) -> UploadEvent | None:
        if not raw:
            return None
        try:
            return UploadEvent.model_validate_json(raw)
        except ValueError:
            logger.warning("Skipping unreadable event %s", key)
            return None

    async def save_file_record(self, record: FileRecord) -> None:
        value = record.model_dump_json(by_alias=True, exclude={"cid"})
        await self.kv.hset(FILES_KEY, record.cid, value)

    async def get_file_record(self, cid: str) -> FileRecord | None:
        return self._parse_file(cid, await self.kv.hget(FILES_KEY, cid))

    async def list_files(self) -> list[FileRecord]:
        entries = await self.kv.hgetall(FILES_KEY)
        files = [record for cid, raw in entries.items() if (record := self._parse_file(cid, raw))]
        return sorted(files, key=lambda f: f.created_at, reverse=True)

    async def list_files_by_owner(self, owner: str) -> list[FileRecord]:
        return [f for f in await self.list_files() if f.owner == owner]

    async def remove_file_record(self, cid: str) -> None:
        await self.kv.hset(FILES_KEY, cid, "")

    async def remove_files_for_owner(self, owner: str) -> list[str]:
        files = await self.list_files_by_owner(owner)
        await asyncio.gather(*(self.remove_file_record(f.cid) for f in files))
        return [f.cid for f in files]

    async def add_upload_event(self, event: UploadEvent) -> None:
        key = f"{time.time_ns() // 1_000_000}:{event.cid}"
        await self.kv.hset(EVENTS_KEY, key, event.model_dump_json(by_alias=True))

    async def list_events(self, limit: int = 20) -> list[UploadEvent]:
        entries = await self.kv.hgetall(EVENTS_KEY)
        events = [event for key, raw in entries.items() if (event := self._parse_event(key, raw))]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]

    async def remove_events_for_user(self, username: str) -> int:
        entries = await self.kv.hgetall(EVENTS_KEY)
        keys = [key for key, raw in entries.items() if (event := self._parse_event(key, raw)) and event.user == username]
        await asyncio.gather(*(self.kv.hset(EVENTS_KEY, key, "") for key in keys))
        return len(keys)
