import base64
import os
from pathlib import Path

import pytest

from snapvault.encryption import Encryptor
from snapvault.errors import ConfigurationError, SnapshotIOError
from snapvault.models import EncryptedFileRecord, PlainFileRecord, RecordKind
from snapvault.snapshot_builder import (
    LARGE_FILE_THRESHOLD,
    SnapshotBuilder,
    get_mime_type,
    is_binary_file,
)


class TestFileClassification:
    def test_binary_extensions(self):
        assert is_binary_file("photo.JPG")
        assert is_binary_file("archive.tar")
        assert not is_binary_file("notes.txt")
        assert not is_binary_file("Makefile")

    def test_mime_types(self):
        assert get_mime_type("a.png") == "image/png"
        assert get_mime_type("a.jpeg") == "image/jpeg"
        assert get_mime_type("a.pdf") == "application/pdf"
        assert get_mime_type("a.txt") == "application/octet-stream"


class TestSnapshotBuilder:
    def test_builds_relative_paths(self, source_dir):
        snapshot = SnapshotBuilder().build(source_dir)

        assert sorted(snapshot) == [
            "docs/notes/todo.txt",
            "docs/readme.md",
            "file_1.txt",
            "file_2.txt",
            "file_3.txt",
            "image.png",
        ]

    def test_text_and_binary_records(self, source_dir):
        snapshot = SnapshotBuilder().build(source_dir)

        text = snapshot["file_1.txt"]
        assert isinstance(text, PlainFileRecord)
        assert text.kind == RecordKind.TEXT
        assert text.content == "Content of file 1"

        image = snapshot["image.png"]
        assert image.kind == RecordKind.BINARY
        assert image.mime_type == "image/png"
        assert base64.b64decode(image.content) == (source_dir / "image.png").read_bytes()

    def test_invalid_utf8_text_falls_back_to_binary(self, tmp_path):
        (tmp_path / "latin1.txt").write_bytes("café".encode("latin-1"))

        record = SnapshotBuilder().build(tmp_path)["latin1.txt"]

        assert record.kind == RecordKind.BINARY
        assert record.decode() == "café".encode("latin-1")

    def test_exclude_patterns_match_names(self, source_dir):
        snapshot = SnapshotBuilder(exclude_patterns=[r"^docs$", r"^file_2\."]).build(source_dir)
        assert sorted(snapshot) == ["file_1.txt", "file_3.txt", "image.png"]

    def test_exclude_pattern_matches_anywhere_in_name(self, source_dir):
        (source_dir / "debug.log").write_text("noise")

        snapshot = SnapshotBuilder(exclude_patterns=[r"\.log$", "ile_"]).build(source_dir)

        assert sorted(snapshot) == ["docs/notes/todo.txt", "docs/readme.md", "image.png"]

    def test_invalid_exclude_pattern(self):
        with pytest.raises(ConfigurationError):
            SnapshotBuilder(exclude_patterns=["*.tmp"])

    def test_max_file_size_skips_large_files(self, source_dir):
        snapshot = SnapshotBuilder(max_file_size=100).build(source_dir)
        assert "image.png" not in snapshot
        assert "file_1.txt" in snapshot

    def test_large_file_is_streamed(self, tmp_path):
        content = os.urandom(LARGE_FILE_THRESHOLD + 10)
        (tmp_path / "big.zip").write_bytes(content)

        record = SnapshotBuilder(chunk_size=64 * 1024).build(tmp_path)["big.zip"]

        assert record.decode() == content

    def test_empty_directory(self, tmp_path):
        assert SnapshotBuilder().build(tmp_path) == {}

    def test_empty_file(self, tmp_path):
        (tmp_path / "empty.txt").write_bytes(b"")
        assert SnapshotBuilder().build(tmp_path)["empty.txt"].decode() == b""

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_symlinked_directory_is_not_followed(self, source_dir):
        os.symlink(source_dir / "docs", source_dir / "docs_link", target_is_directory=True)

        snapshot = SnapshotBuilder().build(source_dir)

        assert not any(path.startswith("docs_link") for path in snapshot)

    def test_encrypted_records(self, source_dir):
        encryptor = Encryptor("pw")
        snapshot = SnapshotBuilder(encryptor=encryptor).build(source_dir)

        record = snapshot["file_1.txt"]
        assert isinstance(record, EncryptedFileRecord)
        assert record.auth_tag is not None
        assert encryptor.decrypt(*record.blob()) == b"Content of file 1"
        assert snapshot["image.png"].mime_type == "image/png"

    def test_parallel_matches_sequential(self, source_dir):
        sequential = SnapshotBuilder(max_workers=1).build(source_dir)
        parallel = SnapshotBuilder(max_workers=4).build(source_dir)

        assert list(sequential) == list(parallel)
        assert sequential == parallel

    def test_missing_source(self, tmp_path):
        with pytest.raises(SnapshotIOError) as exc_info:
            SnapshotBuilder().build(tmp_path / "missing")
        assert exc_info.value.path == str(tmp_path / "missing")

    def test_source_is_a_file(self, tmp_path):
        (tmp_path / "file.txt").write_text("x")
        with pytest.raises(SnapshotIOError):
            SnapshotBuilder().build(tmp_path / "file.txt")

    def test_earliest_failure_is_reported(self, source_dir):
        class FailingBuilder(SnapshotBuilder):
            def process_file(self, entry):
                if entry.relative_path.startswith("file_"):
                    raise SnapshotIOError(f"cannot read {entry.relative_path}", path=str(entry.full_path))
                return super().process_file(entry)

        with pytest.raises(SnapshotIOError) as exc_info:
            FailingBuilder(max_workers=4).build(source_dir)

        assert exc_info.value.path == str(Path(source_dir) / "file_1.txt")
