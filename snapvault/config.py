import json
from enum import Enum
from importlib import metadata
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError
from .models import EncryptionSettings


class StorageKind(str, Enum):
    PINATA = "PINATA"
    IPFS = "IPFS-CLIENT"
    LOCAL = "LOCAL"


class PinataSettings(BaseModel):
    jwt: str = Field(default="", repr=False)
    gateway: str = "gateway.pinata.cloud"
    api_url: str = "https://api.pinata.cloud"
    timeout: float = 30.0


class IpfsSettings(BaseModel):
    url: str
    api_key: str | None = Field(default=None, repr=False)
    timeout: float = 60.0


class LocalSettings(BaseModel):
    path: Path = Path("./storage")


class StorageConfig(BaseModel):
    service: StorageKind
    config: dict[str, Any] = Field(default_factory=dict)

    def settings(self) -> PinataSettings | IpfsSettings | LocalSettings:
        model = {
            StorageKind.PINATA: PinataSettings,
            StorageKind.IPFS: IpfsSettings,
            StorageKind.LOCAL: LocalSettings,
        }[self.service]
        try:
            return model(**self.config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid {self.service.value} storage configuration: {e}")


class PathsConfig(BaseModel):
    backup: Path = Path("./backup")
    restore: Path = Path("./restore")
    storage: Path = Path("./storage")
    logs: Path = Path("./logs")


class PerformanceConfig(BaseModel):
    chunk_size: int = Field(default=1024 * 1024, gt=0)
    max_concurrent: int = Field(default=3, ge=1)
    cache_enabled: bool = True
    cache_size: int = Field(default=100, ge=1)


class VaultConfig(BaseModel):
    storage: StorageConfig
    encryption: EncryptionSettings = Field(default_factory=EncryptionSettings)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    exclude_patterns: list[str] = Field(default_factory=list)
    max_file_size: int | None = None


def load_config(config_path: Path) -> VaultConfig:
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path) as f:
            config_data = json.load(f)
        return VaultConfig.model_validate(config_data)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid configuration file: {e}")
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration file {config_path}: {e}")


def save_config(config: VaultConfig, config_path: Path) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    # Secrets belong in the environment, not on disk
    data["encryption"].pop("key", None)

    with open(config_path, "w") as f:
        json.dump(data, f, indent=2)


def is_version_compatible(current: str, minimum: str) -> bool:
    def parse(version: str) -> list[int]:
        parts = []
        for part in version.split("."):
            digits = "".join(ch for ch in part if ch.isdigit())
            parts.append(int(digits) if digits else 0)
        return parts

    current_parts = parse(current)
    for i, minimum_part in enumerate(parse(minimum)):
        current_part = current_parts[i] if i < len(current_parts) else 0
        if current_part > minimum_part:
            return True
        if current_part < minimum_part:
            return False
    return True


REQUIRED_DEPENDENCIES = {
    "cryptography": "41.0.0",
    "pydantic": "2.0.0",
}

SERVICE_DEPENDENCIES = {
    StorageKind.PINATA: {"requests": "2.28.0"},
    StorageKind.IPFS: {"requests": "2.28.0"},
    StorageKind.LOCAL: {},
}


def check_dependencies(service: StorageKind) -> None:
    dependencies = {**REQUIRED_DEPENDENCIES, **SERVICE_DEPENDENCIES[service]}

    for name, min_version in dependencies.items():
        try:
            version = metadata.version(name)
        except metadata.PackageNotFoundError:
            raise ConfigurationError(f"Required dependency {name} is not available")

        if not is_version_compatible(version, min_version):
            logger.warning(
                f"Dependency {name} has version {version}, but minimum {min_version} is recommended"
            )
