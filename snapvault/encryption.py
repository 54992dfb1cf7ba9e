import hashlib
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import ConfigurationError, IntegrityError

IV_SIZE = 16
TAG_SIZE = 16

AEAD_ALGORITHMS = {"aes-256-gcm"}
SUPPORTED_ALGORITHMS = {"aes-256-gcm", "aes-256-cbc", "aes-256-ctr"}


@dataclass(frozen=True)
class EncryptedBlob:
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes | None = None


class Encryptor:
    """Whole-blob AES encryption bound to one passphrase and one algorithm.

    The key is the SHA-256 digest of the passphrase. Every ``encrypt`` call
    draws a fresh random 16-byte IV; callers must never reuse an IV from a
    previous result.

    Only ``aes-256-gcm`` authenticates the ciphertext. With ``aes-256-cbc``
    and ``aes-256-ctr`` a wrong key or corrupted ciphertext is not detected
    and decrypts to garbage (CBC may still fail on padding).
    """

    def __init__(self, passphrase: str, algorithm: str = "aes-256-gcm"):
        algorithm = algorithm.lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported encryption algorithm: {algorithm} "
                f"(supported: {', '.join(sorted(SUPPORTED_ALGORITHMS))})"
            )
        if not passphrase:
            raise ConfigurationError("Encryption passphrase must not be empty")

        self.algorithm = algorithm
        self._key = hashlib.sha256(passphrase.encode("utf-8")).digest()

    @property
    def is_aead(self) -> bool:
        return self.algorithm in AEAD_ALGORITHMS

    def _mode(self, iv: bytes, tag: bytes | None = None) -> modes.Mode:
        if self.algorithm == "aes-256-gcm":
            return modes.GCM(iv, tag) if tag is not None else modes.GCM(iv)
        if self.algorithm == "aes-256-cbc":
            return modes.CBC(iv)
        return modes.CTR(iv)

    def encrypt(self, data: bytes) -> EncryptedBlob:
        iv = os.urandom(IV_SIZE)
        encryptor = Cipher(algorithms.AES(self._key), self._mode(iv)).encryptor()

        if self.algorithm == "aes-256-cbc":
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            data = padder.update(data) + padder.finalize()

        ciphertext = encryptor.update(data) + encryptor.finalize()
        auth_tag = encryptor.tag if self.is_aead else None
        return EncryptedBlob(ciphertext=ciphertext, iv=iv, auth_tag=auth_tag)

    def decrypt(self, ciphertext: bytes, iv: bytes, auth_tag: bytes | None = None) -> bytes:
        if self.is_aead:
            if not auth_tag:
                raise IntegrityError(f"Missing authentication tag for {self.algorithm}")
            if len(auth_tag) != TAG_SIZE:
                raise IntegrityError(f"Malformed authentication tag ({len(auth_tag)} bytes)")

        try:
            decryptor = Cipher(
                algorithms.AES(self._key), self._mode(iv, auth_tag if self.is_aead else None)
            ).decryptor()
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()

            if self.algorithm == "aes-256-cbc":
                unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
                plaintext = unpadder.update(plaintext) + unpadder.finalize()

            return plaintext
        except InvalidTag as e:
            raise IntegrityError(
                "Authentication failed: wrong key, wrong algorithm or tampered data"
            ) from e
        except ValueError as e:
            raise IntegrityError(f"Decryption failed: {e}") from e
