"""Hardening providers usable by the token generator.

Every provider exposes ``encrypt(value: str) -> str``. One-way providers
(the digests and argon2) stop there; ``Aes256`` additionally exposes
``decrypt`` and is therefore refused by the token generator.
"""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Callable, Dict, Optional, Protocol, runtime_checkable

from argon2 import PasswordHasher, Type
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


@runtime_checkable
class CryptoProvider(Protocol):
    def encrypt(self, value: str) -> str: ...


class _StretchedDigest:
    algorithm: str = "sha512"
    default_stretches: int = 20

    def __init__(self, stretches: Optional[int] = None) -> None:
        self.stretches = self.default_stretches if stretches is None else stretches
        if self.stretches < 1:
            raise ValueError("stretches must be at least 1")

    def encrypt(self, value: str) -> str:
        digest = value
        for _ in range(self.stretches):
            digest = hashlib.new(self.algorithm, digest.encode("utf-8")).hexdigest()
        return digest

    def matches(self, digest: str, value: str) -> bool:
        return self.encrypt(value) == digest

    def __repr__(self) -> str:
        return f"{type(self).__name__}(stretches={self.stretches})"


class Sha512(_StretchedDigest):
    """Hex SHA-512, re-hashed ``stretches`` times. The default for tokens."""

    algorithm = "sha512"
    default_stretches = 20


class Sha256(_StretchedDigest):
    algorithm = "sha256"
    default_stretches = 20


class Sha1(_StretchedDigest):
    """Legacy digest kept for stores that sized the token column for 40 chars."""

    algorithm = "sha1"
    default_stretches = 10


class Argon2:
    """Salted argon2id encoding; one-way, output differs on every call."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def encrypt(self, value: str) -> str:
        return self._hasher.hash(value)

    def __repr__(self) -> str:
        return "Argon2()"


class Aes256:
    """Reversible AES-256-GCM encryption.

    Suitable for secrets that must be read back. Never used to harden a
    persistence token: anything that can be decrypted leaks its input.
    """

    def __init__(self, key: Optional[str | bytes] = None) -> None:
        if key is None:
            raw = os.urandom(32)
        elif isinstance(key, bytes) and len(key) == 32:
            raw = key
        else:
            material = key.encode() if isinstance(key, str) else key
            raw = hashlib.sha256(material).digest()
        self._cipher = AESGCM(raw)

    def encrypt(self, value: str) -> str:
        nonce = os.urandom(12)
        sealed = self._cipher.encrypt(nonce, value.encode("utf-8"), None)
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, value: str) -> str:
        blob = base64.urlsafe_b64decode(value.encode("ascii"))
        try:
            plain = self._cipher.decrypt(blob[:12], blob[12:], None)
        except InvalidTag as exc:
            raise ValueError("ciphertext does not match key") from exc
        return plain.decode("utf-8")

    def __repr__(self) -> str:
        return "Aes256()"


PROVIDERS: Dict[str, Callable[..., CryptoProvider]] = {
    "sha512": Sha512,
    "sha256": Sha256,
    "sha1": Sha1,
    "argon2": Argon2,
    "aes256": Aes256,
}


def build_provider(name: str, *, aes_key: Optional[str] = None) -> CryptoProvider:
    """Instantiate a provider by registry name.

    Raises:
        KeyError: if ``name`` is not registered
    """
    normalized = name.strip().lower()
    factory = PROVIDERS[normalized]
    if normalized == "aes256":
        return factory(aes_key)
    return factory()


def is_reversible(provider: object) -> bool:
    return callable(getattr(provider, "decrypt", None))


__all__ = [
    "CryptoProvider",
    "Sha512",
    "Sha256",
    "Sha1",
    "Argon2",
    "Aes256",
    "PROVIDERS",
    "build_provider",
    "is_reversible",
]
