import base64
import os
import re
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .encryption import Encryptor
from .errors import ConfigurationError, SnapshotIOError
from .models import EncryptedFileRecord, FileRecord, PlainFileRecord, Snapshot

LARGE_FILE_THRESHOLD = 1024 * 1024
DEFAULT_CHUNK_SIZE = 1024 * 1024

BINARY_EXTENSIONS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".bmp",
    ".pdf",
    ".doc",
    ".docx",
    ".xls",
    ".xlsx",
    ".zip",
    ".rar",
    ".7z",
    ".tar",
    ".gz",
}

MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".pdf": "application/pdf",
}


def is_binary_file(filename: str) -> bool:
    return Path(filename).suffix.lower() in BINARY_EXTENSIONS


def get_mime_type(filename: str) -> str:
    return MIME_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


@dataclass
class FileEntry:
    full_path: Path
    relative_path: str
    size: int


class SnapshotBuilder:
    """Walk a directory tree and turn every file into a FileRecord.

    The walk is depth-first and sequential. Reading (and encrypting) the
    collected files runs on up to ``max_workers`` threads; when several files
    fail, the one earliest in walk order is reported.
    """

    def __init__(
        self,
        exclude_patterns: list[str] | None = None,
        max_file_size: int | None = None,
        encryptor: Encryptor | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_workers: int = 1,
    ):
        self.exclude_patterns = exclude_patterns or []
        try:
            self._exclude_regexes = [re.compile(pattern) for pattern in self.exclude_patterns]
        except re.error as e:
            raise ConfigurationError(f"Invalid exclude pattern: {e}") from e
        self.max_file_size = max_file_size
        self.encryptor = encryptor
        self.chunk_size = max(chunk_size, 1)
        self.max_workers = max(max_workers, 1)

    def build(self, source_path: str | Path) -> Snapshot:
        source = Path(source_path)
        if not source.is_dir():
            raise SnapshotIOError(f"Source path is not a directory: {source}", path=str(source))

        entries = list(self.walk(source))
        logger.info(f"Found {len(entries)} files to process in '{source}'")

        snapshot: Snapshot = {}
        if self.max_workers == 1 or len(entries) < 2:
            for entry in entries:
                snapshot[entry.relative_path] = self.process_file(entry)
            return snapshot

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(self.process_file, entry) for entry in entries]
            try:
                for entry, future in zip(entries, futures):
                    snapshot[entry.relative_path] = future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        return snapshot

    def walk(self, directory: Path, base: str = "") -> Iterator[FileEntry]:
        try:
            with os.scandir(directory) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise SnapshotIOError(
                f"Failed to process directory {directory}: {e}", path=str(directory)
            ) from e

        for child in children:
            if self._is_excluded(child.name):
                logger.debug(f"Excluding '{child.path}'")
                continue

            relative_path = f"{base}/{child.name}" if base else child.name

            try:
                is_dir = child.is_dir(follow_symlinks=False)
                is_file = not is_dir and child.is_file()
                size = child.stat().st_size if is_file else 0
            except OSError as e:
                raise SnapshotIOError(f"Failed to stat {child.path}: {e}", path=child.path) from e

            if is_dir:
                yield from self.walk(Path(child.path), relative_path)
                continue

            if not is_file:
                logger.debug(f"Skipping non-regular file '{child.path}'")
                continue

            if self.max_file_size is not None and size > self.max_file_size:
                logger.warning(
                    f"Skipping file larger than {self.max_file_size} bytes: '{child.path}' ({size} bytes)"
                )
                continue

            yield FileEntry(Path(child.path), relative_path, size)

    def process_file(self, entry: FileEntry) -> FileRecord:
        try:
            if entry.size >= LARGE_FILE_THRESHOLD:
                content = self._read_streaming(entry.full_path)
            else:
                content = entry.full_path.read_bytes()
        except OSError as e:
            raise SnapshotIOError(
                f"Failed to process file {entry.full_path}: {e}", path=str(entry.full_path)
            ) from e

        mime_type = get_mime_type(entry.full_path.name)

        if self.encryptor:
            # Whole file in one blob, large files included
            blob = self.encryptor.encrypt(content)
            return EncryptedFileRecord(
                encrypted=base64.b64encode(blob.ciphertext).decode("ascii"),
                iv=base64.b64encode(blob.iv).decode("ascii"),
                auth_tag=base64.b64encode(blob.auth_tag).decode("ascii") if blob.auth_tag else None,
                mime_type=mime_type,
            )

        return PlainFileRecord.from_bytes(content, is_binary_file(entry.full_path.name), mime_type)

    def _read_streaming(self, path: Path) -> bytes:
        buffer = bytearray()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                buffer.extend(chunk)
        logger.debug(f"Streamed {len(buffer)} bytes from '{path}'")
        return bytes(buffer)

    def _is_excluded(self, name: str) -> bool:
        return any(regex.search(name) for regex in self._exclude_regexes)
