"""
Credential Vault — authenticated encryption of secrets at rest.

AES-256-GCM. Blob layout (base64 of the concatenation):

    nonce (12 bytes) || tag (16 bytes) || ciphertext

Key derivation is a fixed rule, not a KDF: the configured secret's UTF-8
bytes are right-padded with ``!`` to 32 bytes and truncated to 32 bytes.
Changing it would orphan every stored blob.
"""

import base64
import binascii
import hashlib
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from botfleet.errors import CryptoError

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
KEY_PAD = b"!"


def derive_key(secret: str) -> bytes:
    """Pad/truncate the configured secret to exactly 32 bytes."""
    raw = secret.encode("utf-8")
    return raw.ljust(KEY_BYTES, KEY_PAD)[:KEY_BYTES]


class CredentialVault:
    """Stateless apart from the key; safe to share across tasks."""

    def __init__(self, secret: str):
        self._aesgcm = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; store it up front
        cipher_text, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return base64.b64encode(nonce + tag + cipher_text).decode("ascii")

    def decrypt(self, blob: str) -> str:
        try:
            data = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise CryptoError("Ciphertext is not valid base64") from exc

        if len(data) < NONCE_BYTES + TAG_BYTES:
            raise CryptoError("Ciphertext too short")

        nonce = data[:NONCE_BYTES]
        tag = data[NONCE_BYTES:NONCE_BYTES + TAG_BYTES]
        cipher_text = data[NONCE_BYTES + TAG_BYTES:]
        try:
            plain = self._aesgcm.decrypt(nonce, cipher_text + tag, None)
        except InvalidTag as exc:
            raise CryptoError("Ciphertext failed authentication") from exc

        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CryptoError("Decrypted payload is not UTF-8") from exc

    @staticmethod
    def hash(value: str) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_token(length: int = 32) -> str:
        return secrets.token_hex(length)


_vault: CredentialVault | None = None


def get_vault() -> CredentialVault:
    """Process-wide vault built from settings.encryption_key."""
    global _vault
    if _vault is None:
        from botfleet.config import settings
        _vault = CredentialVault(settings.encryption_key)
    return _vault
