"""
Backing-file persistence for the configuration tree.

The file holds either plain 2-space-indented JSON or an encrypted envelope.
Writes go through a temporary sibling file and an atomic replace, so readers
never observe a half-written document.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigLoadError
from .secure_store import ConfigCipher, looks_like_envelope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredDocument:
    """Parsed tree plus the sha256 digest of the exact bytes it came from."""

    tree: dict[str, Any]
    digest: str


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ConfigFileStore:
    def __init__(self, path: str | Path, cipher: ConfigCipher | None = None) -> None:
        self.path = Path(path)
        self.cipher = cipher

    @property
    def encrypted(self) -> bool:
        return self.cipher is not None

    def read(self) -> StoredDocument:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError as exc:
            raise ConfigLoadError(f"Configuration file not found: {self.path}") from exc
        except OSError as exc:
            raise ConfigLoadError(f"Unable to read configuration file {self.path}: {exc}") from exc

        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConfigLoadError(
                f"Configuration file {self.path} is not valid JSON: {exc}"
            ) from exc

        if looks_like_envelope(document):
            if self.cipher is None:
                raise ConfigLoadError(
                    f"Configuration file {self.path} is encrypted but no key is configured"
                )
            plaintext = self.cipher.open(document)
            try:
                document = json.loads(plaintext)
            except json.JSONDecodeError as exc:
                raise ConfigLoadError(
                    f"Decrypted configuration in {self.path} is not valid JSON: {exc}"
                ) from exc
        elif self.cipher is not None:
            raise ConfigLoadError(
                f"Secure storage is enabled but {self.path} is not an encrypted envelope"
            )

        if not isinstance(document, dict):
            raise ConfigLoadError(f"Configuration file {self.path} must contain a JSON object")
        return StoredDocument(tree=document, digest=_digest(raw))

    def write(self, tree: dict[str, Any]) -> str:
        """Persist ``tree`` atomically and return the digest of the written bytes."""
        text = json.dumps(tree, indent=2)
        if self.cipher is not None:
            text = self.cipher.seal(text)
        data = text.encode("utf-8")
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "wb", dir=self.path.parent, prefix=f".{self.path.name}.", delete=False
            ) as handle:
                tmp_name = handle.name
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as exc:
            raise ConfigLoadError(f"Unable to write configuration file {self.path}: {exc}") from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
        logger.debug("Wrote %d bytes to %s", len(data), self.path)
        return _digest(data)

    def exists(self) -> bool:
        return self.path.is_file()

    def digest(self) -> str | None:
        try:
            return _digest(self.path.read_bytes())
        except OSError:
            return None


__all__ = ["ConfigFileStore", "StoredDocument"]
