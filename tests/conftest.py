import os
from pathlib import Path

import pytest
from loguru import logger

from snapvault.backup_manager import BackupOrchestrator
from snapvault.config import PerformanceConfig, StorageConfig, StorageKind, VaultConfig
from snapvault.storage.local import LocalStorage


@pytest.fixture(autouse=True)
def quiet_logger():
    """Keep loguru output out of the test report."""
    logger.remove()
    yield


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Create a source directory with text, binary and nested files."""
    source = tmp_path / "source"
    (source / "docs" / "notes").mkdir(parents=True)

    for i in range(1, 4):
        (source / f"file_{i}.txt").write_text(f"Content of file {i}")

    (source / "docs" / "readme.md").write_text("# Readme\n")
    (source / "docs" / "notes" / "todo.txt").write_text("buy milk\n")
    (source / "image.png").write_bytes(os.urandom(512))

    return source


@pytest.fixture
def restore_dir(tmp_path: Path) -> Path:
    return tmp_path / "restore"


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "store")


@pytest.fixture
def vault_config(tmp_path: Path) -> VaultConfig:
    return VaultConfig(
        storage=StorageConfig(service=StorageKind.LOCAL, config={"path": str(tmp_path / "store")}),
        performance=PerformanceConfig(max_concurrent=2),
    )


@pytest.fixture
def orchestrator(storage: LocalStorage, vault_config: VaultConfig) -> BackupOrchestrator:
    return BackupOrchestrator(storage, vault_config)


def tree_contents(root: Path) -> dict[str, bytes]:
    """Map every file below root to its bytes, keyed by posix relative path."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in root.rglob("*")
        if path.is_file()
    }
