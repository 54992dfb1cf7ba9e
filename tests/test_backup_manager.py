import json
import re
from unittest.mock import MagicMock

import pytest

from snapvault.backup_manager import BackupOrchestrator, format_size, generate_backup_name
from snapvault.config import PerformanceConfig, StorageConfig, StorageKind, VaultConfig
from snapvault.errors import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    IntegrityError,
    SnapshotIOError,
    SnapshotValidationError,
)
from snapvault.models import BackupOptions, ChangeKind, EncryptionSettings, UploadResult
from tests.conftest import tree_contents


def encrypted(key: str | None = "passphrase", algorithm: str = "aes-256-gcm") -> BackupOptions:
    return BackupOptions(encryption=EncryptionSettings(enabled=True, algorithm=algorithm, key=key))


def with_key(key: str, algorithm: str = "aes-256-gcm") -> BackupOptions:
    return BackupOptions(encryption=EncryptionSettings(enabled=False, algorithm=algorithm, key=key))


class TestHelpers:
    def test_format_size(self):
        assert format_size(512) == "512B"
        assert format_size(2048) == "2.0KB"
        assert format_size(5 * 1024 * 1024) == "5.0MB"
        assert format_size(3 * 1024**3) == "3.0GB"

    def test_generate_backup_name(self):
        name = generate_backup_name("file-backup", 2048, ["daily", "home"])
        assert re.match(
            r"^snapvault-file-backup-2\.0KB-daily-home-\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}-\d{3}$",
            name,
        )


class TestBackupRestore:
    def test_round_trip(self, orchestrator, source_dir, restore_dir):
        result = orchestrator.backup(source_dir)

        assert orchestrator.restore(result.hash, restore_dir) is True
        assert tree_contents(restore_dir) == tree_contents(source_dir)

    def test_backup_payload_shape(self, orchestrator, storage, source_dir):
        result = orchestrator.backup(
            source_dir, BackupOptions(name="nightly", description="desc", tags=["a"])
        )
        stored = storage.get(result.hash)

        assert result.name == source_dir.name
        assert set(stored) == {"data", "metadata"}
        assert stored["data"]["file_1.txt"] == {
            "type": "text",
            "content": "Content of file 1",
            "mimeType": "application/octet-stream",
        }
        metadata = stored["metadata"]
        assert metadata["name"] == "nightly"
        assert metadata["description"] == "desc"
        assert metadata["tags"] == ["a"]
        assert metadata["type"] == "file-backup"
        assert metadata["versionInfo"]["checksum"] == result.version_info.checksum

    def test_generated_name(self, orchestrator, storage, source_dir):
        result = orchestrator.backup(source_dir)
        name = storage.get(result.hash)["metadata"]["name"]
        assert name.startswith("snapvault-file-backup-")

    @pytest.mark.parametrize("algorithm", ["aes-256-gcm", "aes-256-cbc", "aes-256-ctr"])
    def test_encrypted_round_trip(self, orchestrator, storage, source_dir, restore_dir, algorithm):
        result = orchestrator.backup(source_dir, encrypted(algorithm=algorithm))

        record = storage.get(result.hash)["data"]["file_1.txt"]
        assert record["isEncrypted"] is True
        assert "Content of file 1" not in json.dumps(record)

        orchestrator.restore(result.hash, restore_dir, with_key("passphrase", algorithm))
        assert tree_contents(restore_dir) == tree_contents(source_dir)

    def test_wrong_key_writes_nothing_for_failed_file(self, orchestrator, source_dir, restore_dir):
        result = orchestrator.backup(source_dir, encrypted())

        with pytest.raises(IntegrityError):
            orchestrator.restore(result.hash, restore_dir, with_key("wrong"))

        # Files are restored in sorted order, the first one fails
        assert not (restore_dir / "docs" / "notes" / "todo.txt").exists()

    def test_algorithm_mismatch_writes_nothing(self, orchestrator, tmp_path, restore_dir):
        source = tmp_path / "src"
        source.mkdir()
        (source / "a.txt").write_text("hello")
        result = orchestrator.backup(source, encrypted(algorithm="aes-256-gcm"))

        with pytest.raises(IntegrityError):
            orchestrator.restore(result.hash, restore_dir, with_key("passphrase", "aes-256-ctr"))

        assert not (restore_dir / "a.txt").exists()

    def test_compare_detailed_algorithm_mismatch(self, orchestrator, source_dir):
        result = orchestrator.backup(source_dir, encrypted(algorithm="aes-256-gcm"))

        with pytest.raises(IntegrityError):
            orchestrator.compare_detailed(
                result.hash, source_dir, with_key("passphrase", "aes-256-cbc")
            )

    def test_exclude_patterns_are_regular_expressions(self, orchestrator, storage, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "a.txt").write_text("keep")
        (source / "debug.log").write_text("drop")

        result = orchestrator.backup(source, BackupOptions(exclude_patterns=[r"\.log$"]))

        assert list(storage.get(result.hash)["data"]) == ["a.txt"]

    def test_restore_encrypted_without_key(self, orchestrator, source_dir, restore_dir):
        result = orchestrator.backup(source_dir, encrypted())

        with pytest.raises(IntegrityError):
            orchestrator.restore(result.hash, restore_dir)

    def test_encryption_enabled_without_key(self, orchestrator, source_dir):
        with pytest.raises(ConfigurationError):
            orchestrator.backup(source_dir, encrypted(key=None))

    def test_backup_missing_source(self, orchestrator, tmp_path):
        with pytest.raises(SnapshotIOError):
            orchestrator.backup(tmp_path / "missing")

    def test_empty_id_from_storage(self, source_dir):
        storage = MagicMock()
        storage.put.return_value = UploadResult(id="")

        with pytest.raises(BackendError):
            BackupOrchestrator(storage).backup(source_dir)

    def test_restore_rejects_path_traversal(self, orchestrator, storage, restore_dir):
        upload = storage.put(
            {
                "data": {"../escape.txt": {"type": "text", "content": "x"}},
                "metadata": {"timestamp": 0},
            }
        )

        with pytest.raises(SnapshotValidationError):
            orchestrator.restore(upload.id, restore_dir)
        assert not (restore_dir.parent / "escape.txt").exists()

    def test_restore_rejects_malformed_record(self, orchestrator, storage, restore_dir):
        upload = storage.put({"data": {"a.txt": "not a record"}, "metadata": {"timestamp": 0}})

        with pytest.raises(SnapshotValidationError):
            orchestrator.restore(upload.id, restore_dir)

    def test_restore_invalid_backup_shape(self, restore_dir):
        storage = MagicMock()
        storage.get.return_value = {"data": {}}

        with pytest.raises(SnapshotValidationError):
            BackupOrchestrator(storage).restore("some-id", restore_dir)


class TestCache:
    def test_second_backup_is_served_from_cache(self, source_dir):
        storage = MagicMock()
        storage.put.return_value = UploadResult(id="cid-1")
        orchestrator = BackupOrchestrator(storage)

        first = orchestrator.backup(source_dir)
        second = orchestrator.backup(source_dir)

        assert first == second
        assert storage.put.call_count == 1

    def test_different_options_miss_cache(self, source_dir):
        storage = MagicMock()
        storage.put.return_value = UploadResult(id="cid-1")
        orchestrator = BackupOrchestrator(storage)

        orchestrator.backup(source_dir)
        orchestrator.backup(source_dir, BackupOptions(exclude_patterns=[r"\.png$"]))

        assert storage.put.call_count == 2

    def test_use_cache_false_bypasses_cache(self, source_dir):
        storage = MagicMock()
        storage.put.return_value = UploadResult(id="cid-1")
        orchestrator = BackupOrchestrator(storage)

        orchestrator.backup(source_dir)
        orchestrator.backup(source_dir, use_cache=False)

        assert storage.put.call_count == 2

    def test_passphrase_separates_cache_entries(self, source_dir):
        storage = MagicMock()
        storage.put.return_value = UploadResult(id="cid-1")
        orchestrator = BackupOrchestrator(storage)

        orchestrator.backup(source_dir, encrypted(key="alpha"))
        orchestrator.backup(source_dir, encrypted(key="beta"))
        orchestrator.backup(source_dir, encrypted(key="alpha"))

        assert storage.put.call_count == 2

    def test_cache_key_is_not_reproducible_from_passphrase(self, source_dir):
        options = encrypted(key="alpha")
        first = BackupOrchestrator(MagicMock())._cache_key(source_dir, options)
        second = BackupOrchestrator(MagicMock())._cache_key(source_dir, options)

        assert first != second

    def test_cache_disabled(self, source_dir):
        storage = MagicMock()
        storage.put.return_value = UploadResult(id="cid-1")
        config = VaultConfig(
            storage=StorageConfig(service=StorageKind.LOCAL),
            performance=PerformanceConfig(cache_enabled=False),
        )
        orchestrator = BackupOrchestrator(storage, config)

        orchestrator.backup(source_dir)
        orchestrator.backup(source_dir)

        assert orchestrator.cache is None
        assert storage.put.call_count == 2


class TestCompare:
    def test_compare_equal(self, orchestrator, source_dir):
        result = orchestrator.backup(source_dir)
        comparison = orchestrator.compare(result.hash, source_dir)

        assert comparison.is_equal
        assert comparison.remote_version.checksum == result.version_info.checksum

    def test_compare_after_change(self, orchestrator, source_dir):
        result = orchestrator.backup(source_dir)
        (source_dir / "file_1.txt").write_text("changed")

        assert not orchestrator.compare(result.hash, source_dir).is_equal

    def test_compare_detailed_against_itself(self, orchestrator, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "a.txt").write_text("hello")

        result = orchestrator.backup(source)
        comparison = orchestrator.compare_detailed(result.hash, source)

        assert comparison.is_equal
        totals = comparison.total_changes
        assert (totals.added, totals.modified, totals.deleted) == (0, 0, 0)

    def test_compare_detailed_modified(self, orchestrator, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "a.txt").write_text("hello")

        result = orchestrator.backup(source)
        (source / "a.txt").write_text("world")
        comparison = orchestrator.compare_detailed(result.hash, source)

        assert [(d.path, d.kind) for d in comparison.differences] == [
            ("a.txt", ChangeKind.MODIFIED)
        ]
        totals = comparison.total_changes
        assert (totals.added, totals.modified, totals.deleted) == (0, 1, 0)

    def test_compare_detailed_added_and_deleted(self, orchestrator, source_dir):
        result = orchestrator.backup(source_dir)
        (source_dir / "docs" / "readme.md").unlink()
        (source_dir / "docs" / "new.txt").write_text("new")

        comparison = orchestrator.compare_detailed(result.hash, source_dir)

        kinds = {d.path: d.kind for d in comparison.differences}
        assert kinds == {"docs/new.txt": ChangeKind.ADDED, "docs/readme.md": ChangeKind.DELETED}

    def test_compare_detailed_decrypts_remote(self, orchestrator, source_dir):
        result = orchestrator.backup(source_dir, encrypted())

        comparison = orchestrator.compare_detailed(result.hash, source_dir, with_key("passphrase"))

        assert comparison.is_equal


class TestDelete:
    def test_not_pinned_never_unpins(self):
        storage = MagicMock()
        storage.is_pinned.return_value = False

        assert BackupOrchestrator(storage).delete("cid") is False
        storage.unpin.assert_not_called()

    def test_pinned_is_unpinned(self):
        storage = MagicMock()
        storage.is_pinned.return_value = True
        storage.unpin.return_value = True

        assert BackupOrchestrator(storage).delete("cid") is True
        storage.unpin.assert_called_once_with("cid")

    def test_backend_errors_return_false(self):
        storage = MagicMock()
        storage.is_pinned.return_value = True
        storage.unpin.side_effect = BackendError("boom")

        assert BackupOrchestrator(storage).delete("cid") is False

    def test_authentication_errors_propagate(self):
        storage = MagicMock()
        storage.is_pinned.side_effect = AuthenticationError("bad token")

        with pytest.raises(AuthenticationError):
            BackupOrchestrator(storage).delete("cid")

    def test_delete_with_local_storage(self, orchestrator, storage, source_dir):
        result = orchestrator.backup(source_dir)

        assert orchestrator.delete(result.hash) is True
        assert storage.is_pinned(result.hash) is False
        assert orchestrator.delete(result.hash) is False


class TestUploads:
    def test_upload_bytes_removes_temp_file(self, orchestrator, storage):
        upload = orchestrator.upload_bytes(b"raw bytes")

        assert (storage.objects_dir / upload.id).read_bytes() == b"raw bytes"
        assert orchestrator.is_pinned(upload.id)

    def test_upload_json(self, orchestrator):
        upload = orchestrator.upload_json({"data": {}, "metadata": {}})
        assert orchestrator.get_data(upload.id) == {"data": {}, "metadata": {}}


class TestFromConfig:
    def test_local_backend(self, vault_config):
        orchestrator = BackupOrchestrator.from_config(vault_config)
        assert orchestrator.performance.max_concurrent == 2

    def test_encryption_defaults_from_config(self, vault_config, source_dir, restore_dir):
        vault_config.encryption = EncryptionSettings(enabled=True, key="configured")
        orchestrator = BackupOrchestrator.from_config(vault_config)

        result = orchestrator.backup(source_dir)
        orchestrator.restore(result.hash, restore_dir)

        assert tree_contents(restore_dir) == tree_contents(source_dir)
