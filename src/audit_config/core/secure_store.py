"""
Symmetric encryption for the configuration backing file.

Keys are derived from an out-of-band password with PBKDF2-HMAC-SHA256 or
scrypt. Payloads are sealed with AES-256-GCM (authenticated) or AES-256-CBC
with PKCS7 padding, and stored as a JSON envelope of hex-encoded fields.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import EncryptionAlgorithm, KeyDerivationFunction, SecureStorageConfig
from .errors import ConfigDecryptError, ConfigLoadError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


class EncryptedEnvelope(BaseModel):
    """On-disk form of an encrypted configuration document."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    algorithm: EncryptionAlgorithm
    iv: str
    data: str
    auth_tag: str | None = Field(default=None, alias="authTag")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> EncryptedEnvelope:
        try:
            return cls.model_validate(dict(raw))
        except ValidationError as exc:
            raise ConfigLoadError(f"Malformed encrypted envelope: {exc}") from exc


def looks_like_envelope(document: Any) -> bool:
    """True when a parsed JSON document has the envelope shape rather than a config tree."""
    return (
        isinstance(document, Mapping)
        and {"algorithm", "iv", "data"} <= set(document)
        and "environment" not in document
    )


def derive_key(
    password: str,
    salt: bytes,
    kdf: KeyDerivationFunction = "PBKDF2",
    iterations: int = SecureStorageConfig.DEFAULT_ITERATIONS,
) -> bytes:
    """Derive a 32-byte key; identical inputs always yield the same key."""
    secret = password.encode("utf-8")
    if kdf == "PBKDF2":
        return PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        ).derive(secret)
    if kdf == "scrypt":
        return Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P).derive(
            secret
        )
    raise ValueError(f"Unsupported key derivation function: {kdf}")


def encrypt(
    plaintext: str, key: bytes, algorithm: EncryptionAlgorithm = "AES-256-GCM"
) -> EncryptedEnvelope:
    """Seal ``plaintext`` under ``key`` with a fresh random IV."""
    iv = os.urandom(IV_LENGTH)
    payload = plaintext.encode("utf-8")
    if algorithm == "AES-256-GCM":
        sealed = AESGCM(key).encrypt(iv, payload, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return EncryptedEnvelope(
            algorithm=algorithm, iv=iv.hex(), data=ciphertext.hex(), auth_tag=tag.hex()
        )
    if algorithm == "AES-256-CBC":
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(payload) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return EncryptedEnvelope(algorithm=algorithm, iv=iv.hex(), data=ciphertext.hex())
    raise ValueError(f"Unsupported encryption algorithm: {algorithm}")


def decrypt(envelope: EncryptedEnvelope, key: bytes) -> str:
    """
    Open ``envelope`` with ``key``.

    Raises ConfigDecryptError when the envelope is malformed, a GCM tag is
    missing or does not verify, or CBC padding is corrupt.
    """
    try:
        iv = bytes.fromhex(envelope.iv)
        ciphertext = bytes.fromhex(envelope.data)
    except ValueError as exc:
        raise ConfigDecryptError("Encrypted envelope contains invalid hex data") from exc

    if envelope.algorithm == "AES-256-GCM":
        if not envelope.auth_tag:
            raise ConfigDecryptError("Authentication tag required for GCM mode")
        try:
            tag = bytes.fromhex(envelope.auth_tag)
            payload = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError) as exc:
            raise ConfigDecryptError(
                "Failed to decrypt configuration: authentication failed"
            ) from exc
    else:
        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            payload = unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise ConfigDecryptError("Failed to decrypt configuration: bad padding") from exc

    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigDecryptError("Decrypted configuration is not valid UTF-8") from exc


class ConfigCipher:
    """
    Derived key plus algorithm choice, ready to seal and open documents.

    The password is consumed by ``from_password`` and never stored.
    """

    def __init__(self, key: bytes, algorithm: EncryptionAlgorithm = "AES-256-GCM") -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._key = key
        self.algorithm: EncryptionAlgorithm = algorithm

    @classmethod
    def from_password(cls, password: str, storage: SecureStorageConfig) -> ConfigCipher:
        if not password:
            raise ConfigLoadError("Secure storage is enabled but no password was provided")
        key = derive_key(password, bytes.fromhex(storage.salt), storage.kdf, storage.iterations)
        logger.debug("Derived configuration key with %s (%s)", storage.kdf, storage.algorithm)
        return cls(key, storage.algorithm)

    def seal(self, plaintext: str) -> str:
        return encrypt(plaintext, self._key, self.algorithm).to_json()

    def open(self, document: Mapping[str, Any]) -> str:
        return decrypt(EncryptedEnvelope.from_mapping(document), self._key)

    def __repr__(self) -> str:
        return f"ConfigCipher(algorithm={self.algorithm!r})"


def generate_salt(length: int = 32) -> str:
    return os.urandom(length).hex()


__all__ = [
    "ConfigCipher",
    "EncryptedEnvelope",
    "decrypt",
    "derive_key",
    "encrypt",
    "generate_salt",
    "looks_like_envelope",
]
