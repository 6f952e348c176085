"""Fernet-based encryption for outbox payloads at rest.

Extracted record payloads (sleep stages, weights, glucose readings) are
encrypted before being queued in SQLite. Routing columns (data type,
operation, date, source id) stay in clear so the publisher can drain and
group without decrypting.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""


class PayloadEncryptor:
    """Encrypts and decrypts JSON payloads using Fernet symmetric encryption.

    Usage::

        encryptor = PayloadEncryptor(key="...")
        blob = encryptor.encrypt({"value_kg": 71.4})
        encryptor.decrypt(blob)  # {"value_kg": 71.4}
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Args:
            key: A valid Fernet key string. Generate with
                :meth:`generate_key`.

        Raises:
            EncryptionError: If the key is empty or invalid.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, payload: dict[str, Any]) -> str:
        """Serialize a payload to compact JSON and encrypt it.

        Raises:
            EncryptionError: If serialization or encryption fails.
        """
        try:
            plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Payload is not JSON-serializable: {exc}") from exc
        return self._fernet.encrypt(plaintext).decode("utf-8")

    def decrypt(self, blob: str) -> dict[str, Any]:
        """Decrypt a blob produced by :meth:`encrypt`.

        An empty blob decodes to an empty payload.

        Raises:
            EncryptionError: If the blob is invalid, was written with another
                key, or does not contain a JSON object.
        """
        if not blob:
            return {}
        try:
            plaintext = self._fernet.decrypt(blob.encode("utf-8"))
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        try:
            payload = json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise EncryptionError(f"Decrypted payload is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise EncryptionError(
                f"Expected a JSON object payload, got {type(payload).__name__}"
            )
        return payload

    @staticmethod
    def generate_key() -> str:
        """Generate a new URL-safe base64-encoded 32-byte Fernet key."""
        return Fernet.generate_key().decode("utf-8")
