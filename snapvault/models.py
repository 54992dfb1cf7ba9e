import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import SnapshotValidationError


class RecordKind(str, Enum):
    BINARY = "binary"
    TEXT = "text"


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class PlainFileRecord(BaseModel):
    """File stored in content-addressable form (base64 for binary, UTF-8 for text)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    kind: RecordKind = Field(alias="type")
    content: str
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")

    @classmethod
    def from_bytes(cls, content: bytes, binary: bool, mime_type: str) -> "PlainFileRecord":
        if not binary:
            try:
                return cls(kind=RecordKind.TEXT, content=content.decode("utf-8"), mime_type=mime_type)
            except UnicodeDecodeError:
                # Not valid UTF-8, keep the exact bytes
                pass
        return cls(
            kind=RecordKind.BINARY,
            content=base64.b64encode(content).decode("ascii"),
            mime_type=mime_type,
        )

    def decode(self) -> bytes:
        if self.kind == RecordKind.BINARY:
            try:
                return base64.b64decode(self.content, validate=True)
            except binascii.Error as e:
                raise SnapshotValidationError(f"Invalid base64 content: {e}") from e
        return self.content.encode("utf-8")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class EncryptedFileRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    is_encrypted: Literal[True] = Field(default=True, alias="isEncrypted")
    encrypted: str
    iv: str
    auth_tag: str | None = Field(default=None, alias="authTag")
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")

    def blob(self) -> tuple[bytes, bytes, bytes | None]:
        """Return (ciphertext, iv, auth_tag) as raw bytes."""
        try:
            ciphertext = base64.b64decode(self.encrypted, validate=True)
            iv = base64.b64decode(self.iv, validate=True)
            tag = base64.b64decode(self.auth_tag, validate=True) if self.auth_tag else None
        except binascii.Error as e:
            raise SnapshotValidationError(f"Invalid base64 in encrypted record: {e}") from e
        return ciphertext, iv, tag

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


FileRecord = Union[PlainFileRecord, EncryptedFileRecord]
Snapshot = dict[str, FileRecord]


def parse_file_record(path: str, raw: Any) -> FileRecord:
    if not isinstance(raw, dict):
        raise SnapshotValidationError(f"Invalid data for file {path}: data must be an object")

    try:
        if raw.get("isEncrypted"):
            return EncryptedFileRecord.model_validate(raw)
        return PlainFileRecord.model_validate(raw)
    except ValidationError as e:
        raise SnapshotValidationError(f"Invalid data for file {path}: {e}") from e


def snapshot_to_wire(snapshot: Snapshot) -> dict[str, dict[str, Any]]:
    return {path: record.to_wire() for path, record in snapshot.items()}


def snapshot_from_wire(data: Any) -> Snapshot:
    if not isinstance(data, dict):
        raise SnapshotValidationError("Invalid backup data: expected an object of file records")
    return {path: parse_file_record(path, raw) for path, raw in data.items()}


class VersionInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hash: str
    timestamp: int
    size: int
    created_at: str = Field(alias="createdAt")
    modified_at: str = Field(alias="modifiedAt")
    checksum: str


class BackupMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: int
    type: str = "file-backup"
    name: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    version_info: VersionInfo = Field(alias="versionInfo")


class BackupResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hash: str
    version_info: VersionInfo = Field(alias="versionInfo")
    name: str


class EncryptionSettings(BaseModel):
    enabled: bool = False
    algorithm: str = "aes-256-gcm"
    key: str | None = Field(default=None, repr=False)


class BackupOptions(BaseModel):
    exclude_patterns: list[str] = Field(default_factory=list)
    max_file_size: int | None = None
    encryption: EncryptionSettings | None = None
    type: str = "file-backup"
    name: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    timestamp: int | None = None


@dataclass
class UploadResult:
    id: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Difference:
    path: str
    kind: ChangeKind
    old_checksum: str | None = None
    new_checksum: str | None = None
    size_old: int | None = None
    size_new: int | None = None


@dataclass
class ChangeTotals:
    added: int = 0
    modified: int = 0
    deleted: int = 0


@dataclass
class VersionComparison:
    is_equal: bool
    is_newer: bool
    time_diff: int
    formatted_diff: str
    local_version: VersionInfo
    remote_version: VersionInfo


@dataclass
class DetailedComparison(VersionComparison):
    differences: list[Difference] = field(default_factory=list)
    total_changes: ChangeTotals = field(default_factory=ChangeTotals)
