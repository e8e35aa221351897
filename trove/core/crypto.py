from __future__ import annotations

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from trove.core.config import get_settings


class CredentialDecryptError(Exception):
    """Raised when a stored token blob cannot be decrypted with the configured key."""


class CredentialCipher:
    """Encrypts OAuth token blobs at rest; the store only ever sees ciphertext."""

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key.encode("utf-8") if isinstance(key, str) else key)

    def encrypt(self, plaintext: str | None) -> str | None:
        if plaintext is None:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str | None) -> str | None:
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise CredentialDecryptError("stored credential could not be decrypted") from exc


def generate_key() -> str:
    return Fernet.generate_key().decode("utf-8")


@lru_cache
def get_cipher() -> CredentialCipher:
    settings = get_settings()
    if not settings.credential_key:
        raise RuntimeError("TROVE_CREDENTIAL_KEY is required")
    return CredentialCipher(settings.credential_key)
