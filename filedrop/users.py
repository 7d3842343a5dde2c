"""User credentials kept in the key-value store.

Each user is one JSON value in the ``auth_hkey`` hash, keyed by username.
Users are never removed; deletion sets ``metadata.deleted`` and such users
are hidden from lookups and cannot authenticate.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

import bcrypt
from pydantic import Field

from filedrop.errors import BadRequest, Conflict, InvalidCredentials, NotFound
from filedrop.kvstore import KVStore
from filedrop.models import PublicUser, Role, WireModel
from filedrop.repository import utc_now

logger = logging.getLogger(__name__)

ADMIN_USERNAME = "admin"
DEFAULT_ROUNDS = 12
MAX_PASSWORD_BYTES = 72


class StoredUser(WireModel):
    username: str
    role: Role
    password_hash: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    def public(self) -> PublicUser:
        return PublicUser(
            username=self.username,
            role=self.role,
            metadata=self.metadata,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class UserDirectory:
    def __init__(
        self,
        kv: KVStore,
        hkey: str,
        *,
        bootstrap_admin_password: str | None = None,
        rounds: int = DEFAULT_ROUNDS,
    ):
        self.kv = kv
        self.hkey = hkey
        self.bootstrap_admin_password = bootstrap_admin_password
        self.rounds = rounds

    async def init(self) -> None:
        if await self._load(ADMIN_USERNAME):
            return
        if not self.bootstrap_admin_password:
            logger.warning("No bootstrap admin password configured; admin user was not created")
            return
        await self.create_user(ADMIN_USERNAME, self.bootstrap_admin_password, role="admin")
        logger.info("Bootstrapped admin user")

    async def _hash(self, password: bytes) -> str:
        hashed = await asyncio.to_thread(bcrypt.hashpw, password, bcrypt.gensalt(rounds=self.rounds))
        return hashed.decode("utf-8")

    async def _check(self, password: bytes, password_hash: str) -> bool:
        try:
            return await asyncio.to_thread(bcrypt.checkpw, password, password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Stored password hash is not a bcrypt hash")
            return False

    async def _load(self, username: str) -> StoredUser | None:
        return self._parse(username, await self.kv.hget(self.hkey, username))

    @staticmethod
    def _parse(username: str, raw: str | None) -> StoredUser | None:
        if not raw:
            return None
        try:
            return StoredUser.model_validate_json(raw)
        except ValueError:
            logger.warning("Skipping unreadable user record %s", username)
            return None

    async def _save(self, user: StoredUser) -> None:
        await self.kv.hset(self.hkey, user.username, user.model_dump_json(by_alias=True))

    async def create_user(
        self, username: str, password: str, *, role: Role = "user", metadata: dict[str, Any] | None = None
    ) -> PublicUser:
        existing = await self._load(username)
        if existing and not existing.metadata.get("deleted"):
            raise Conflict(f"User {username} already exists")

        secret = password.encode("utf-8")
        if len(secret) > MAX_PASSWORD_BYTES:
            raise BadRequest(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

        now = utc_now()
        user = StoredUser(
            username=username,
            role=role,
            password_hash=await self._hash(secret),
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        await self._save(user)
        return user.public()

    async def authenticate(self, username: str, password: str) -> PublicUser:
        user = await self._load(username)
        if not user or user.metadata.get("deleted"):
            logger.warning("Login attempt for unknown user: %s", username)
            raise InvalidCredentials()
        secret = password.encode("utf-8")
        if len(secret) > MAX_PASSWORD_BYTES or not await self._check(secret, user.password_hash):
            logger.warning("Invalid password for user: %s", username)
            raise InvalidCredentials()
        return user.public()

    async def get_user(self, username: str) -> PublicUser | None:
        user = await self._load(username)
        if not user or user.metadata.get("deleted"):
            return None
        return user.public()

    async def list_users(self) -> list[PublicUser]:
        entries = await self.kv.hgetall(self.hkey)
        users = [user.public() for username, raw in entries.items() if (user := self._parse(username, raw))]
        return sorted(users, key=lambda u: u.username)

    async def update_metadata(self, username: str, metadata: dict[str, Any]) -> PublicUser:
        user = await self._load(username)
        if not user:
            raise NotFound("User not found")
        updated = user.model_copy(update={"metadata": {**user.metadata, **metadata}, "updated_at": utc_now()})
        await self._save(updated)
        return updated.public()
