"""
Refund-wallet key encryption and server API keys.

- KeyCipher: AES-256-GCM with a PBKDF2-SHA256 derived key. Ciphertexts are
  stored as base64(salt[32] | iv[16] | tag[16] | ciphertext).
- hash_api_key / generate_api_key: servers authenticate with a random key;
  only its SHA-256 hex digest is stored.
"""

import base64
import binascii
import hashlib
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from x402_facilitator.errors import ConfigurationError, KeyDecryptionError

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
API_KEY_PREFIX = "x402_"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(32)


class KeyCipher:
    """Encrypts/decrypts refund-wallet private keys with a server-side secret."""

    def __init__(self, secret: str, iterations: int = PBKDF2_ITERATIONS) -> None:
        if not secret:
            raise ConfigurationError("key encryption secret is not configured")
        self._secret = secret.encode("utf-8")
        self._iterations = iterations

    def _derive(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._secret)

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive(salt)).encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag; the stored layout puts it before the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    def decrypt(self, encoded: str) -> str:
        """Decrypt a stored key.

        Raises:
            KeyDecryptionError: On malformed input, wrong secret or tampering
        """
        try:
            blob = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise KeyDecryptionError(f"encrypted key is not valid base64: {e}") from e

        header = SALT_LENGTH + IV_LENGTH + TAG_LENGTH
        if len(blob) <= header:
            raise KeyDecryptionError("encrypted key is too short")

        salt = blob[:SALT_LENGTH]
        iv = blob[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        tag = blob[SALT_LENGTH + IV_LENGTH:header]
        ciphertext = blob[header:]
        try:
            plaintext = AESGCM(self._derive(salt)).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise KeyDecryptionError("encrypted key failed authentication") from e
        return plaintext.decode("utf-8")
