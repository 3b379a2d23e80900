"""Tests for forward_archiver.crypto."""

from __future__ import annotations

import pytest

from forward_archiver.crypto import CredentialVault, generate_vault_password
from forward_archiver.errors import CredentialError

from tests.conftest import TEST_KEY


class TestCredentialVault:
    def test_round_trip(self, credentials: CredentialVault):
        token = credentials.encrypt("vault-password")
        assert token.startswith("v1:")
        assert "vault-password" not in token
        assert credentials.decrypt(token) == "vault-password"

    def test_stored_format_is_hex_nonce_and_ciphertext(self, credentials: CredentialVault):
        version, nonce, ciphertext = credentials.encrypt("abc").split(":")
        assert version == "v1"
        assert len(bytes.fromhex(nonce)) == 12
        # Plaintext plus the 16-byte GCM tag.
        assert len(bytes.fromhex(ciphertext)) == 3 + 16

    def test_fresh_nonce_per_encryption(self, credentials: CredentialVault):
        assert credentials.encrypt("same") != credentials.encrypt("same")

    def test_context_is_bound(self, credentials: CredentialVault):
        token = credentials.encrypt("secret", context="vault:user-1:private")
        assert credentials.decrypt(token, context="vault:user-1:private") == "secret"
        with pytest.raises(CredentialError):
            credentials.decrypt(token, context="vault:user-2:private")

    def test_wrong_key(self, credentials: CredentialVault):
        token = credentials.encrypt("secret")
        other = CredentialVault("cd" * 32)
        with pytest.raises(CredentialError, match="wrong key or tampered"):
            other.decrypt(token)

    def test_tampered_ciphertext(self, credentials: CredentialVault):
        version, nonce, ciphertext = credentials.encrypt("secret").split(":")
        flipped = ("0" if ciphertext[0] != "0" else "1") + ciphertext[1:]
        with pytest.raises(CredentialError):
            credentials.decrypt(f"{version}:{nonce}:{flipped}")

    @pytest.mark.parametrize("token", ["", "v1:abc", "v2:00:00", "v1:zz:zz"])
    def test_malformed_token(self, credentials: CredentialVault, token: str):
        with pytest.raises(CredentialError):
            credentials.decrypt(token)

    def test_key_must_be_32_bytes(self):
        with pytest.raises(CredentialError, match="32 bytes"):
            CredentialVault(TEST_KEY[:32])

    def test_key_must_be_hex(self):
        with pytest.raises(CredentialError, match="hex"):
            CredentialVault("not-hex" * 10)


def test_generate_vault_password():
    first = generate_vault_password()
    assert len(first) == 64
    int(first, 16)
    assert first != generate_vault_password()
