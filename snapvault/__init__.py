from .backup_manager import BackupOrchestrator, format_size, generate_backup_name
from .cache import BackupCache
from .cli import cli
from .config import StorageConfig, StorageKind, VaultConfig, load_config, save_config
from .encryption import Encryptor
from .errors import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    IntegrityError,
    NotFoundError,
    SnapshotIOError,
    SnapshotValidationError,
    SnapvaultError,
)
from .models import (
    BackupMetadata,
    BackupOptions,
    BackupResult,
    DetailedComparison,
    Difference,
    EncryptedFileRecord,
    EncryptionSettings,
    PlainFileRecord,
    VersionComparison,
    VersionInfo,
)
from .monitor import BackupWatcher, WatchConfig
from .snapshot_builder import SnapshotBuilder
from .storage import IpfsStorage, LocalStorage, PinataStorage, StorageService, create_storage
from .versioning import VersionManager

__version__ = "0.1.0"

__all__ = [
    "BackupOrchestrator",
    "BackupCache",
    "SnapshotBuilder",
    "VersionManager",
    "Encryptor",
    "BackupWatcher",
    "WatchConfig",
    "StorageService",
    "PinataStorage",
    "IpfsStorage",
    "LocalStorage",
    "create_storage",
    "VaultConfig",
    "StorageConfig",
    "StorageKind",
    "load_config",
    "save_config",
    "BackupOptions",
    "BackupMetadata",
    "BackupResult",
    "EncryptionSettings",
    "PlainFileRecord",
    "EncryptedFileRecord",
    "VersionInfo",
    "VersionComparison",
    "DetailedComparison",
    "Difference",
    "SnapvaultError",
    "SnapshotIOError",
    "SnapshotValidationError",
    "IntegrityError",
    "ConfigurationError",
    "BackendError",
    "AuthenticationError",
    "NotFoundError",
    "format_size",
    "generate_backup_name",
    "cli",
]
