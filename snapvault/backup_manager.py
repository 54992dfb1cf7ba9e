import hashlib
import hmac
import os
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from .cache import BackupCache
from .config import PerformanceConfig, VaultConfig, check_dependencies
from .encryption import Encryptor
from .errors import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    IntegrityError,
    SnapshotIOError,
    SnapshotValidationError,
)
from .models import (
    BackupMetadata,
    BackupOptions,
    BackupResult,
    DetailedComparison,
    EncryptedFileRecord,
    EncryptionSettings,
    FileRecord,
    PlainFileRecord,
    Snapshot,
    UploadResult,
    VersionComparison,
    snapshot_from_wire,
    snapshot_to_wire,
)
from .snapshot_builder import SnapshotBuilder, is_binary_file
from .storage import StorageService, create_storage
from .versioning import VersionManager, canonical_json


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f}MB"
    return f"{size / (1024 * 1024 * 1024):.1f}GB"


def generate_backup_name(backup_type: str, size: int, tags: list[str] | None = None) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S-%f")[:-3]
    suffix = f"-{'-'.join(tags)}" if tags else ""
    return f"snapvault-{backup_type}-{format_size(size)}{suffix}-{timestamp}"


class BackupOrchestrator:
    """Backup, restore, compare and delete directory snapshots through a storage backend."""

    def __init__(
        self,
        storage: StorageService,
        config: VaultConfig | None = None,
        version_manager: VersionManager | None = None,
        cache: BackupCache | None = None,
    ):
        self.storage = storage
        self.encryption = config.encryption if config else EncryptionSettings()
        self.performance = config.performance if config else PerformanceConfig()
        self.exclude_patterns = config.exclude_patterns if config else []
        self.max_file_size = config.max_file_size if config else None
        self.version_manager = version_manager or VersionManager()
        self._cache_salt = os.urandom(16)

        if cache is not None:
            self.cache = cache
        elif self.performance.cache_enabled:
            self.cache = BackupCache(self.performance.cache_size)
        else:
            self.cache = None

    @classmethod
    def from_config(cls, config: VaultConfig) -> "BackupOrchestrator":
        check_dependencies(config.storage.service)
        storage = create_storage(config.storage)
        logger.info(f"Initialized snapvault with {config.storage.service.value} storage")
        return cls(storage, config)

    def backup(
        self,
        source_path: str | Path,
        options: BackupOptions | None = None,
        use_cache: bool = True,
    ) -> BackupResult:
        source = Path(source_path)
        options = self._resolve_options(options)
        operation_id = uuid.uuid4().hex[:8]
        start_time = time.time()

        cache_key = self._cache_key(source, options)
        if use_cache and self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Using cached backup {cached.hash} for '{source}' [{operation_id}]")
                return cached

        try:
            logger.info(f"Creating backup of '{source}' [{operation_id}]")
            builder = self._builder(options, encryptor=self._encryptor(options.encryption))
            snapshot = builder.build(source)

            data = snapshot_to_wire(snapshot)
            version_info = self.version_manager.create_version_info(canonical_json(data))

            metadata = BackupMetadata(
                timestamp=options.timestamp or int(time.time() * 1000),
                type=options.type,
                name=options.name
                or generate_backup_name(options.type, version_info.size, options.tags),
                description=options.description,
                tags=options.tags,
                version_info=version_info,
            )
            payload = {
                "data": data,
                "metadata": metadata.model_dump(by_alias=True, mode="json", exclude_none=True),
            }

            name = source.resolve().name
            upload = self.storage.put(payload, {"name": name})
            if not upload or not upload.id:
                raise BackendError("Storage service did not return a valid hash")

            result = BackupResult(hash=upload.id, version_info=version_info, name=name)
            if self.cache is not None:
                self.cache.set(cache_key, result)

            logger.info(
                f"Backup {result.hash} created: {len(snapshot)} files, "
                f"{format_size(version_info.size)} in {time.time() - start_time:.2f}s "
                f"[{operation_id}]"
            )
            return result

        except Exception as e:
            logger.error(f"Backup failed [{operation_id}]: {e}")
            raise

    def restore(
        self,
        content_id: str,
        target_path: str | Path,
        options: BackupOptions | None = None,
    ) -> bool:
        """Write every file of a backup below ``target_path``.

        Encrypted records are decrypted before anything is written for them.
        The first failing file aborts the restore; files written before it
        are left in place.
        """
        options = self._resolve_options(options)
        operation_id = uuid.uuid4().hex[:8]
        start_time = time.time()

        try:
            logger.info(f"Restoring backup {content_id} to '{target_path}' [{operation_id}]")
            data, _ = self._fetch(content_id)
            snapshot = snapshot_from_wire(data)

            target = Path(target_path)
            try:
                target.mkdir(parents=True, exist_ok=True)
                root = target.resolve()
            except OSError as e:
                raise SnapshotIOError(
                    f"Cannot create restore target {target}: {e}", path=str(target)
                ) from e

            encryptor = None
            for relative_path, record in sorted(snapshot.items()):
                file_path = self._safe_target(root, relative_path)

                if isinstance(record, EncryptedFileRecord) and encryptor is None:
                    encryptor = self._restore_encryptor(relative_path, options.encryption)

                content = self._decode_record(relative_path, record, encryptor)

                try:
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    file_path.write_bytes(content)
                except OSError as e:
                    raise SnapshotIOError(
                        f"Failed to restore file {relative_path}: {e}", path=str(file_path)
                    ) from e

                logger.debug(f"Restored '{relative_path}' ({len(content)} bytes)")

            logger.info(
                f"Restored {len(snapshot)} files from {content_id} in "
                f"{time.time() - start_time:.2f}s [{operation_id}]"
            )
            return True

        except Exception as e:
            logger.error(f"Restore failed [{operation_id}]: {e}")
            raise

    def compare(
        self,
        content_id: str,
        source_path: str | Path,
        options: BackupOptions | None = None,
    ) -> VersionComparison:
        options = self._resolve_options(options)
        operation_id = uuid.uuid4().hex[:8]

        try:
            _, raw_metadata = self._fetch(content_id)
            metadata = self._parse_metadata(raw_metadata)

            local = self._builder(options).build(source_path)
            result = self.version_manager.compare_versions(
                canonical_json(snapshot_to_wire(local)), metadata.version_info
            )

            logger.info(
                f"Compared '{source_path}' with {content_id}: "
                f"{'equal' if result.is_equal else 'different'} [{operation_id}]"
            )
            return result

        except Exception as e:
            logger.error(f"Compare failed [{operation_id}]: {e}")
            raise

    def compare_detailed(
        self,
        content_id: str,
        source_path: str | Path,
        options: BackupOptions | None = None,
    ) -> DetailedComparison:
        options = self._resolve_options(options)
        operation_id = uuid.uuid4().hex[:8]

        try:
            data, raw_metadata = self._fetch(content_id)
            remote = snapshot_from_wire(data)

            try:
                remote_version = BackupMetadata.model_validate(raw_metadata).version_info
            except ValidationError:
                logger.warning(f"Backup {content_id} has no usable version info")
                remote_version = None

            settings = options.encryption
            if settings and settings.key and self._has_encrypted(remote):
                remote = self._decrypt_snapshot(remote, Encryptor(settings.key, settings.algorithm))

            local = self._builder(options).build(source_path)
            result = self.version_manager.compare_detailed(local, remote, remote_version)

            totals = result.total_changes
            logger.info(
                f"Detailed compare of '{source_path}' with {content_id}: {totals.added} added, "
                f"{totals.modified} modified, {totals.deleted} deleted [{operation_id}]"
            )
            return result

        except Exception as e:
            logger.error(f"Detailed compare failed [{operation_id}]: {e}")
            raise

    def delete(self, content_id: str) -> bool:
        """Unpin a backup. Returns False instead of raising, except on authentication errors."""
        try:
            if not self.storage.is_pinned(content_id):
                logger.info(f"Backup {content_id} is not pinned, nothing to delete")
                return False

            deleted = self.storage.unpin(content_id)
            if deleted:
                logger.info(f"Deleted backup {content_id}")
            return bool(deleted)

        except AuthenticationError:
            raise
        except Exception as e:
            logger.error(f"Delete operation failed for {content_id}: {e}")
            return False

    def upload_json(
        self, payload: dict[str, Any], options: dict[str, Any] | None = None
    ) -> UploadResult:
        return self.storage.put(payload, options)

    def upload_file(self, path: str | Path, options: dict[str, Any] | None = None) -> UploadResult:
        return self.storage.put_file(path, options)

    def upload_bytes(self, content: bytes, options: dict[str, Any] | None = None) -> UploadResult:
        fd, tmp_name = tempfile.mkstemp(prefix="snapvault-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            return self.storage.put_file(tmp_name, options)
        finally:
            try:
                os.unlink(tmp_name)
            except OSError as e:
                logger.warning(f"Could not remove temporary file {tmp_name}: {e}")

    def get_data(self, content_id: str) -> dict[str, Any]:
        return self.storage.get(content_id)

    def get_metadata(self, content_id: str) -> dict[str, Any]:
        return self.storage.get_metadata(content_id)

    def is_pinned(self, content_id: str) -> bool:
        return self.storage.is_pinned(content_id)

    def unpin(self, content_id: str) -> bool:
        return self.storage.unpin(content_id)

    def _resolve_options(self, options: BackupOptions | None) -> BackupOptions:
        options = options or BackupOptions()
        updates: dict[str, Any] = {}

        if options.encryption is None:
            updates["encryption"] = self.encryption
        if not options.exclude_patterns and self.exclude_patterns:
            updates["exclude_patterns"] = list(self.exclude_patterns)
        if options.max_file_size is None and self.max_file_size is not None:
            updates["max_file_size"] = self.max_file_size

        return options.model_copy(update=updates) if updates else options

    def _cache_key(self, source: Path, options: BackupOptions) -> str:
        dumped = options.model_dump(mode="json", exclude={"encryption": {"key"}})
        if options.encryption and options.encryption.key:
            # Per-instance salt, never the raw passphrase
            dumped["key_fingerprint"] = hmac.new(
                self._cache_salt, options.encryption.key.encode("utf-8"), hashlib.sha256
            ).hexdigest()
        options_digest = hashlib.sha256(canonical_json(dumped)).hexdigest()
        return f"{source}:{options_digest}"

    def _builder(self, options: BackupOptions, encryptor: Encryptor | None = None) -> SnapshotBuilder:
        return SnapshotBuilder(
            exclude_patterns=options.exclude_patterns,
            max_file_size=options.max_file_size,
            encryptor=encryptor,
            chunk_size=self.performance.chunk_size,
            max_workers=self.performance.max_concurrent,
        )

    @staticmethod
    def _encryptor(settings: EncryptionSettings | None) -> Encryptor | None:
        if settings is None or not settings.enabled:
            return None
        if not settings.key:
            raise ConfigurationError("Encryption is enabled but no key was provided")
        return Encryptor(settings.key, settings.algorithm)

    @staticmethod
    def _restore_encryptor(relative_path: str, settings: EncryptionSettings | None) -> Encryptor:
        if settings is None or not settings.key:
            raise IntegrityError(
                f"File {relative_path} is encrypted but no encryption key was provided"
            )
        try:
            return Encryptor(settings.key, settings.algorithm)
        except ConfigurationError as e:
            raise IntegrityError(f"Cannot decrypt {relative_path}: {e}") from e

    def _fetch(self, content_id: str) -> tuple[Any, Any]:
        backup = self.storage.get(content_id)

        if not isinstance(backup, dict):
            raise SnapshotValidationError("Invalid backup format")
        if backup.get("data") is None:
            raise SnapshotValidationError("Invalid backup: missing data")
        if backup.get("metadata") is None:
            raise SnapshotValidationError("Invalid backup: missing metadata")

        return backup["data"], backup["metadata"]

    @staticmethod
    def _parse_metadata(raw_metadata: Any) -> BackupMetadata:
        try:
            return BackupMetadata.model_validate(raw_metadata)
        except ValidationError as e:
            raise SnapshotValidationError(f"Invalid backup: malformed metadata ({e})") from e

    @staticmethod
    def _safe_target(root: Path, relative_path: str) -> Path:
        candidate = (root / relative_path).resolve()
        if candidate == root or not candidate.is_relative_to(root):
            raise SnapshotValidationError(f"Unsafe path in backup: {relative_path}")
        return candidate

    @staticmethod
    def _decode_record(relative_path: str, record: FileRecord, encryptor: Encryptor | None) -> bytes:
        if isinstance(record, PlainFileRecord):
            return record.decode()

        ciphertext, iv, auth_tag = record.blob()
        if auth_tag is not None and not encryptor.is_aead:
            raise IntegrityError(
                f"File {relative_path} was encrypted with an authenticated cipher, "
                f"cannot decrypt it with {encryptor.algorithm}"
            )
        try:
            return encryptor.decrypt(ciphertext, iv, auth_tag)
        except IntegrityError as e:
            raise IntegrityError(f"Failed to restore file {relative_path}: {e}") from e

    @staticmethod
    def _has_encrypted(snapshot: Snapshot) -> bool:
        return any(isinstance(record, EncryptedFileRecord) for record in snapshot.values())

    @classmethod
    def _decrypt_snapshot(cls, snapshot: Snapshot, encryptor: Encryptor) -> Snapshot:
        plain: Snapshot = {}
        for path, record in snapshot.items():
            if isinstance(record, EncryptedFileRecord):
                content = cls._decode_record(path, record, encryptor)
                plain[path] = PlainFileRecord.from_bytes(
                    content, is_binary_file(path), record.mime_type
                )
            else:
                plain[path] = record
        return plain
