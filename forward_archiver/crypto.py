"""Credential vault: AES-256-GCM encryption for secrets stored at rest.

Used for vault passwords, wallet keys and seed phrases. Stored format is
``v1:<nonce hex>:<ciphertext+tag hex>``; the 16-byte GCM tag is appended to
the ciphertext by :class:`AESGCM`. An optional *context* string is bound as
associated data, so a secret encrypted for one row cannot be replayed into
another.
"""

from __future__ import annotations

import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CredentialError

_VERSION = "v1"
_NONCE_BYTES = 12


class CredentialVault:
    """Stateless encrypt/decrypt around one 256-bit key."""

    def __init__(self, key_hex: str) -> None:
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise CredentialError("encryption key must be hex encoded") from exc
        if len(key) != 32:
            raise CredentialError("encryption key must be 32 bytes (64 hex characters)")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str, *, context: str | None = None) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        aad = context.encode() if context else None
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), aad)
        return f"{_VERSION}:{nonce.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str, *, context: str | None = None) -> str:
        """Decrypt a value produced by :meth:`encrypt`.

        Raises :class:`CredentialError` on a malformed token, wrong key,
        wrong context, or tampered ciphertext.
        """
        parts = token.split(":")
        if len(parts) != 3 or parts[0] != _VERSION:
            raise CredentialError("invalid encrypted value format")
        try:
            nonce = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError as exc:
            raise CredentialError("invalid encrypted value encoding") from exc

        aad = context.encode() if context else None
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, aad)
        except InvalidTag as exc:
            raise CredentialError("decryption failed: wrong key or tampered data") from exc
        return plaintext.decode("utf-8")


def generate_vault_password() -> str:
    """Random password for a new private vault (32 bytes, hex)."""
    return secrets.token_hex(32)
