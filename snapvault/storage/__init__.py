from loguru import logger

from ..config import StorageConfig, StorageKind
from ..errors import ConfigurationError
from .base import RateLimiter, StorageService
from .ipfs import IpfsStorage
from .local import LocalStorage
from .pinata import PinataStorage


def create_storage(config: StorageConfig) -> StorageService:
    settings = config.settings()

    if config.service == StorageKind.PINATA:
        storage = PinataStorage(
            jwt=settings.jwt,
            gateway=settings.gateway,
            api_url=settings.api_url,
            timeout=settings.timeout,
        )
    elif config.service == StorageKind.IPFS:
        storage = IpfsStorage(url=settings.url, api_key=settings.api_key, timeout=settings.timeout)
    elif config.service == StorageKind.LOCAL:
        storage = LocalStorage(settings.path)
    else:
        raise ConfigurationError(f"Unsupported storage service: {config.service}")

    logger.debug(f"Created {config.service.value} storage backend")
    return storage


__all__ = [
    "IpfsStorage",
    "LocalStorage",
    "PinataStorage",
    "RateLimiter",
    "StorageService",
    "create_storage",
]
