"""Encryption at rest for vendor credentials (AES-256-GCM)."""

import base64
import binascii
import json
import os
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import MigrationError

NONCE_SIZE = 12
KEY_SIZE = 32


class CredentialCipher:
    """
    Seals credential dicts into opaque tokens and opens them again.

    A token is base64(nonce + ciphertext + tag), with a fresh 12-byte nonce
    per call, so sealing the same credentials twice gives different tokens.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Credential encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_key_string(cls, key: str) -> "CredentialCipher":
        """
        Build a cipher from a configured key.

        Args:
            key: 64 hex characters, or base64 that decodes to 32 bytes

        Raises:
            ValueError: The key is neither
        """
        key = key.strip()
        if len(key) == 2 * KEY_SIZE:
            try:
                return cls(bytes.fromhex(key))
            except ValueError:
                pass
        try:
            raw = base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError):
            raw = b""
        if len(raw) != KEY_SIZE:
            raise ValueError("Credential encryption key must be 32 bytes (64 hex chars or 44 base64 chars)")
        return cls(raw)

    @staticmethod
    def generate_key() -> str:
        """A new random key in the hex form from_key_string accepts."""
        return AESGCM.generate_key(bit_length=KEY_SIZE * 8).hex()

    def encrypt(self, credentials: Dict[str, Any]) -> str:
        nonce = os.urandom(NONCE_SIZE)
        plaintext = json.dumps(credentials, sort_keys=True).encode("utf-8")
        sealed = self._aead.encrypt(nonce, plaintext, None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> Dict[str, Any]:
        """
        Open a token produced by encrypt.

        Raises:
            MigrationError: The token was tampered with or sealed under another key
        """
        try:
            combined = base64.b64decode(token, validate=True)
            nonce, sealed = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except (InvalidTag, binascii.Error, ValueError):
            raise MigrationError("Stored credentials could not be decrypted")
        return json.loads(plaintext.decode("utf-8"))
