"""
Unit tests for the Credential Vault
"""

import hashlib

import pytest
from cryptography.fernet import Fernet

from tradesync.credential_vault import CredentialVault
from tradesync.errors import DecryptionError, EncryptionError


class TestCredentialVaultKey:
    def test_missing_key_fails_fast(self):
        with pytest.raises(EncryptionError):
            CredentialVault(None)
        with pytest.raises(EncryptionError):
            CredentialVault("")

    def test_malformed_key_fails_fast(self):
        with pytest.raises(EncryptionError):
            CredentialVault("your-secret-key-change-in-production")

    def test_accepts_bytes_key(self):
        vault = CredentialVault(Fernet.generate_key())
        assert vault.decrypt(vault.encrypt("abc")) == "abc"


class TestCredentialVaultEncryption:
    def test_round_trip_key_and_secret(self, vault):
        for plaintext in ("XyZ1234ApiKey", "s3cr3t/with+symbols=", "ключ"):
            assert vault.decrypt(vault.encrypt(plaintext)) == plaintext

    def test_ciphertext_is_randomized_and_not_plaintext(self, vault):
        first = vault.encrypt("same-secret")
        second = vault.encrypt("same-secret")
        assert first != second
        assert "same-secret" not in first

    def test_wrong_key_is_rejected(self, vault):
        other = CredentialVault(CredentialVault.generate_key())
        with pytest.raises(DecryptionError):
            other.decrypt(vault.encrypt("secret"))

    def test_tampered_ciphertext_is_rejected(self, vault):
        token = vault.encrypt("secret")
        tampered = token[:-6] + ("A" if token[-6] != "A" else "B") + token[-5:]
        with pytest.raises(DecryptionError):
            vault.decrypt(tampered)

    @pytest.mark.parametrize("ciphertext", ["", None, "not-a-token", "U2FsdGVkX1+abc"])
    def test_malformed_ciphertext_is_rejected(self, vault, ciphertext):
        with pytest.raises(DecryptionError):
            vault.decrypt(ciphertext)


class TestFingerprint:
    def test_deterministic(self):
        assert CredentialVault.fingerprint("key", "secret") == CredentialVault.fingerprint("key", "secret")

    def test_distinct_secrets_differ(self):
        assert CredentialVault.fingerprint("key", "secret-a") != CredentialVault.fingerprint("key", "secret-b")

    def test_split_point_matters(self):
        assert CredentialVault.fingerprint("ab", "c") != CredentialVault.fingerprint("a", "bc")

    def test_digest_uses_nul_separator(self):
        expected = hashlib.sha256(b"key\x00secret").hexdigest()
        assert CredentialVault.fingerprint("key", "secret") == expected
        assert CredentialVault.fingerprint("key", "secret") != hashlib.sha256(b"keysecret").hexdigest()

    def test_is_sha256_hex(self, vault):
        fingerprint = vault.fingerprint("key", "secret")
        assert len(fingerprint) == 64
        int(fingerprint, 16)
        assert "secret" not in fingerprint
