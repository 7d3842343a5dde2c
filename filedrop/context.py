"""One set of collaborators per application instance."""

from dataclasses import dataclass

from filedrop.accounts import AccountService
from filedrop.blobstore import BlobStore, HttpBlobStore, InMemoryBlobStore, LocalBlobStore
from filedrop.config import Settings
from filedrop.ingest import UploadConstraints, UploadIngestor
from filedrop.kvstore import HttpKVStore, InMemoryKVStore, KVStore, SqliteKVStore
from filedrop.quota import QuotaLedger
from filedrop.repository import RecordStore
from filedrop.session import SessionGuard
from filedrop.signing import TokenCodec
from filedrop.uploads import UploadOrchestrator
from filedrop.users import UserDirectory


@dataclass
class AppContext:
    settings: Settings
    kv: KVStore
    blobs: BlobStore
    guard: SessionGuard
    ledger: QuotaLedger
    records: RecordStore
    users: UserDirectory
    accounts: AccountService
    uploads: UploadOrchestrator

    async def startup(self) -> None:
        await self.kv.init()
        await self.blobs.init()
        await self.users.init()

    async def shutdown(self) -> None:
        await self.blobs.aclose()
        await self.kv.aclose()


def build_kv(settings: Settings) -> KVStore:
    if settings.kv_backend == "memory":
        return InMemoryKVStore()
    if settings.kv_backend == "sqlite":
        return SqliteKVStore(settings.database_path)
    if settings.kv_backend == "http":
        return HttpKVStore(settings.kv_store_url, timeout=settings.http_timeout_seconds)
    raise ValueError(f"Unknown kv_backend: {settings.kv_backend}")


def build_blobs(settings: Settings) -> BlobStore:
    if settings.blob_backend == "memory":
        return InMemoryBlobStore()
    if settings.blob_backend == "local":
        return LocalBlobStore(settings.storage_dir)
    if settings.blob_backend == "http":
        return HttpBlobStore(settings.blob_store_url, timeout=settings.http_timeout_seconds)
    raise ValueError(f"Unknown blob_backend: {settings.blob_backend}")


def build_context(
    settings: Settings, *, kv: KVStore | None = None, blobs: BlobStore | None = None
) -> AppContext:
    kv = kv or build_kv(settings)
    blobs = blobs or build_blobs(settings)

    guard = SessionGuard(
        TokenCodec(settings.auth_secret),
        cookie_name=settings.session_cookie_name,
        ttl_seconds=settings.session_ttl_seconds,
        secure=settings.secure_cookies,
    )
    ledger = QuotaLedger(kv, default_max=settings.default_max_images)
    records = RecordStore(kv)
    users = UserDirectory(
        kv,
        settings.auth_hkey,
        bootstrap_admin_password=settings.bootstrap_admin_password,
        rounds=settings.bcrypt_rounds,
    )
    accounts = AccountService(
        users=users,
        ledger=ledger,
        records=records,
        blobs=blobs,
        default_max_images=settings.default_max_images,
    )
    uploads = UploadOrchestrator(
        ingestor=UploadIngestor(blobs, queue_size=settings.upload_queue_size),
        ledger=ledger,
        records=records,
        blobs=blobs,
        constraints=UploadConstraints(
            allowed_mime_types=frozenset(settings.allowed_mime_types),
            max_bytes=settings.max_upload_size_bytes,
        ),
        node_id=settings.node_id,
    )
    return AppContext(
        settings=settings,
        kv=kv,
        blobs=blobs,
        guard=guard,
        ledger=ledger,
        records=records,
        users=users,
        accounts=accounts,
        uploads=uploads,
    )
