import asyncio
import logging

from filedrop.blobstore import BlobStore
from filedrop.errors import BadRequest, NotFound
from filedrop.models import PublicUser, Quota
from filedrop.quota import QuotaLedger
from filedrop.repository import RecordStore, utc_now
from filedrop.uploads import discard_blob
from filedrop.users import ADMIN_USERNAME, UserDirectory

logger = logging.getLogger(__name__)


class AccountService:
    """Admin-side user management: users plus their quota, files and events."""

    def __init__(
        self,
        *,
        users: UserDirectory,
        ledger: QuotaLedger,
        records: RecordStore,
        blobs: BlobStore,
        default_max_images: int,
    ):
        self.users = users
        self.ledger = ledger
        self.records = records
        self.blobs = blobs
        self.default_max_images = default_max_images

    async def list_accounts(self) -> list[tuple[PublicUser, Quota]]:
        users = [user for user in await self.users.list_users() if not user.deleted]
        quotas = await asyncio.gather(*(self.ledger.get(user.username) for user in users))
        return list(zip(users, quotas))

    async def create_account(
        self, username: str, password: str, max_images: int | None = None
    ) -> tuple[PublicUser, Quota]:
        quota_max = self.default_max_images if max_images is None else max_images
        user = await self.users.create_user(username, password, role="user", metadata={"maxImages": quota_max})
        quota = await self.ledger.reset(user.username, quota_max)
        logger.info("Created user %s with quota %d", user.username, quota_max)
        return user, quota

    async def delete_account(self, username: str) -> list[str]:
        """
        Soft-delete a user and release everything they own.

        Owned blobs are deleted best-effort; file records and upload events
        are removed, the quota drops to ``{max: 0, used: 0}`` and the user is
        flagged ``deleted`` so it can no longer log in or appear in listings.

        Returns:
            Content ids of the removed files
        """
        if username == ADMIN_USERNAME:
            raise BadRequest("Cannot delete admin user")
        existing = await self.users.get_user(username)
        if not existing:
            raise NotFound("User not found")

        files = await self.records.list_files_by_owner(username)

        async def release(cid: str) -> None:
            await discard_blob(self.blobs, cid)
            await self.records.remove_file_record(cid)

        await asyncio.gather(*(release(f.cid) for f in files))
        await self.records.remove_events_for_user(username)
        await self.ledger.reset(username, 0)
        await self.users.update_metadata(username, {"deleted": True, "deletedAt": utc_now().isoformat()})

        removed = [f.cid for f in files]
        logger.info("Deleted user %s and %d file(s)", username, len(removed))
        return removed
