"""
Tests for the credential vault (AES-256-GCM at rest)
"""

import base64

import pytest

from botfleet.errors import CryptoError
from botfleet.services.vault import CredentialVault, derive_key, NONCE_BYTES, TAG_BYTES


class TestKeyDerivation:

    def test_short_secret_is_padded(self):
        key = derive_key("abc")
        assert len(key) == 32
        assert key == b"abc" + b"!" * 29

    def test_long_secret_is_truncated(self):
        key = derive_key("x" * 40)
        assert key == b"x" * 32

    def test_multibyte_secret_counts_bytes(self):
        key = derive_key("é" * 20)  # 40 bytes in UTF-8
        assert len(key) == 32


class TestEncryptDecrypt:

    def setup_method(self):
        self.vault = CredentialVault("unit-test-secret")

    def test_round_trip(self):
        blob = self.vault.encrypt("123456:telegram-token")
        assert blob != "123456:telegram-token"
        assert self.vault.decrypt(blob) == "123456:telegram-token"

    def test_unicode_and_empty(self):
        assert self.vault.decrypt(self.vault.encrypt("")) == ""
        assert self.vault.decrypt(self.vault.encrypt("clé secrète 🔑")) == "clé secrète 🔑"

    def test_fresh_nonce_per_call(self):
        a = self.vault.encrypt("same")
        b = self.vault.encrypt("same")
        assert a != b
        assert base64.b64decode(a)[:NONCE_BYTES] != base64.b64decode(b)[:NONCE_BYTES]

    def test_blob_layout(self):
        data = base64.b64decode(self.vault.encrypt("hello"))
        # nonce + tag + ciphertext (GCM ciphertext length == plaintext length)
        assert len(data) == NONCE_BYTES + TAG_BYTES + len("hello")

    def test_tampered_blob_rejected(self):
        data = bytearray(base64.b64decode(self.vault.encrypt("secret")))
        data[-1] ^= 0x01
        with pytest.raises(CryptoError):
            self.vault.decrypt(base64.b64encode(bytes(data)).decode())

    def test_tampered_tag_rejected(self):
        data = bytearray(base64.b64decode(self.vault.encrypt("secret")))
        data[NONCE_BYTES] ^= 0xFF
        with pytest.raises(CryptoError):
            self.vault.decrypt(base64.b64encode(bytes(data)).decode())

    def test_wrong_key_rejected(self):
        blob = self.vault.encrypt("secret")
        with pytest.raises(CryptoError):
            CredentialVault("another-secret").decrypt(blob)

    def test_too_short_rejected(self):
        with pytest.raises(CryptoError):
            self.vault.decrypt(base64.b64encode(b"\x00" * 20).decode())

    def test_not_base64_rejected(self):
        with pytest.raises(CryptoError):
            self.vault.decrypt("not base64 at all!!")


class TestHelpers:

    def test_hash_is_stable_sha256(self):
        assert CredentialVault.hash("abc") == CredentialVault.hash("abc")
        assert len(CredentialVault.hash("abc")) == 64

    def test_generate_token(self):
        token = CredentialVault.generate_token(16)
        assert len(token) == 32
        assert token != CredentialVault.generate_token(16)
