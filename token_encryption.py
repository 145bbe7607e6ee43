"""
Credential Payload Encryption

Encrypts credential records before they are written to Redis, so that a
compromised Redis instance does not hand out usable user ids, scopes or
PKCE challenges.

Uses AES-256-GCM. The Redis namespace prefix is bound into every ciphertext
as associated data, which stops a record written as an authorization code
from being replayed into the refresh-token namespace.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

ENCRYPTION_KEY_ENV = "REDIS_ENCRYPTION_KEY"


class TokenEncryption:
    """
    AES-256-GCM cipher for credential payloads.

    Wire format: base64(nonce || ciphertext || tag)
    """

    KEY_SIZE = 32  # AES-256
    NONCE_SIZE = 12  # 96-bit GCM nonce
    TAG_SIZE = 16

    def __init__(self, master_key: Optional[str] = None):
        """
        Args:
            master_key: Base64-encoded 32-byte key. Falls back to the
                        REDIS_ENCRYPTION_KEY environment variable.

        Raises:
            ValueError: If no key is configured or the key is malformed
        """
        key_b64 = master_key or os.getenv(ENCRYPTION_KEY_ENV)
        if not key_b64:
            raise ValueError(
                f"{ENCRYPTION_KEY_ENV} is required for payload encryption. "
                "Generate one with: python -c 'import os,base64; print(base64.b64encode(os.urandom(32)).decode())'"
            )

        try:
            key = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid encryption key encoding: {e}")

        if len(key) != self.KEY_SIZE:
            raise ValueError(f"Encryption key must be {self.KEY_SIZE} bytes (got {len(key)})")

        self._aead = AESGCM(key)
        logging.info("Credential payload encryption initialized (AES-256-GCM)")

    def encrypt(self, plaintext: str, associated_data: str = "") -> str:
        """
        Encrypt a serialized record.

        Args:
            plaintext: JSON payload
            associated_data: Context the ciphertext is bound to (namespace prefix)

        Returns:
            Base64 text safe to store in Redis
        """
        nonce = os.urandom(self.NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode('utf-8'), associated_data.encode('utf-8'))
        return base64.b64encode(nonce + sealed).decode('ascii')

    def decrypt(self, ciphertext_b64: str, associated_data: str = "") -> str:
        """
        Decrypt a payload produced by :meth:`encrypt`.

        Raises:
            ValueError: On malformed input, a wrong key, tampering, or a
                        mismatched associated_data context
        """
        try:
            blob = base64.b64decode(ciphertext_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Encrypted payload is not valid base64: {e}")

        if len(blob) < self.NONCE_SIZE + self.TAG_SIZE:
            raise ValueError("Encrypted payload too short")

        nonce, sealed = blob[:self.NONCE_SIZE], blob[self.NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, associated_data.encode('utf-8'))
        except InvalidTag:
            raise ValueError("Encrypted payload failed authentication")
        return plaintext.decode('utf-8')
