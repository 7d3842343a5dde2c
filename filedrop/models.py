from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["admin", "user"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionPayload(WireModel):
    model_config = ConfigDict(frozen=True)

    username: str
    role: Role
    issued_at: int
    expires_at: int


class Quota(WireModel):
    max: int = Field(ge=0)
    used: int = Field(ge=0)


class FileRecord(WireModel):
    cid: str
    owner: str
    filename: str
    mime: str
    size: int
    created_at: datetime
    node_id: str


class UploadEvent(WireModel):
    type: Literal["upload"] = "upload"
    user: str
    filename: str
    cid: str
    node_id: str
    created_at: datetime


class PublicUser(WireModel):
    username: str
    role: Role
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def deleted(self) -> bool:
        return bool(self.metadata.get("deleted"))


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1)


class CreateUserRequest(WireModel):
    username: str = Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(min_length=1)
    max_images: int | None = Field(default=None, ge=0)


class AccountResponse(BaseModel):
    user: PublicUser
    quota: Quota


class UploadResponse(BaseModel):
    record: FileRecord
    quota: Quota


class FileListResponse(BaseModel):
    files: list[FileRecord]
    viewer: str


class EventListResponse(BaseModel):
    events: list[UploadEvent]


class UserListResponse(BaseModel):
    users: list[AccountResponse]


class DeleteUserResponse(BaseModel):
    ok: bool = True
    removed: list[str]


class FileDeleteResponse(BaseModel):
    ok: bool = True
    quota: Quota
