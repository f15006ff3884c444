"""
EQVault - Key Manager
Derives the per-device key from a user secret.

🔒 The derived key lives in process memory only. It is never
serialized, logged, exported or included in any output record.

Derivation: PBKDF2-HMAC-SHA256, salt = device id, >= 100,000
iterations, 256-bit output, used as an AES-256-GCM key.
"""

import asyncio
import hashlib
import hmac
import os
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionFailed, EncryptionNotInitialized
from .models import NONCE_BYTES, SealedBox

logger = structlog.get_logger(__name__)


class KeyManager:
    """
    Holds the device key for the lifetime of the process.

    All operations before initialize() raise EncryptionNotInitialized.
    CPU-bound work (derivation, AEAD) runs in a worker thread so the
    event loop is never blocked.
    """

    MIN_ITERATIONS = 100_000
    KEY_BYTES = 32  # AES-256

    def __init__(self, device_id: str, iterations: int = MIN_ITERATIONS):
        if not device_id:
            raise ValueError("device_id is required (it is the KDF salt)")
        if iterations < self.MIN_ITERATIONS:
            raise ValueError(f"PBKDF2 iterations must be >= {self.MIN_ITERATIONS}")

        self.device_id = device_id
        self.iterations = iterations
        self._key: Optional[bytes] = None
        self._aead: Optional[AESGCM] = None

    def __repr__(self) -> str:
        state = "initialized" if self.is_initialized else "uninitialized"
        return f"KeyManager(device_id={self.device_id!r}, key=<{state}>)"

    def __getstate__(self):
        raise TypeError("KeyManager holds key material and cannot be serialized")

    @property
    def is_initialized(self) -> bool:
        return self._aead is not None

    async def initialize(self, user_secret: str) -> None:
        """Derive the device key from a passphrase or biometric-derived string."""
        if not user_secret:
            raise ValueError("user_secret must be non-empty")

        key = await asyncio.to_thread(self._derive, user_secret)
        self._key = key
        self._aead = AESGCM(key)
        logger.info("key_derived", device_id=self.device_id, iterations=self.iterations)

    def _derive(self, user_secret: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_BYTES,
            salt=self.device_id.encode("utf-8"),  # Device-specific salt
            iterations=self.iterations,
        )
        return kdf.derive(user_secret.encode("utf-8"))

    def clear(self) -> None:
        """Forget the key. Re-initialize to recover."""
        self._key = None
        self._aead = None
        logger.info("key_cleared", device_id=self.device_id)

    def _require_aead(self) -> AESGCM:
        if self._aead is None:
            raise EncryptionNotInitialized()
        return self._aead

    async def encrypt(self, plaintext: bytes, associated_data: Optional[bytes] = None) -> SealedBox:
        """Encrypt with a fresh 96-bit nonce."""
        aead = self._require_aead()
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = await asyncio.to_thread(aead.encrypt, nonce, plaintext, associated_data)
        return SealedBox(nonce=nonce, ciphertext=ciphertext)

    async def decrypt(self, box: SealedBox, associated_data: Optional[bytes] = None) -> bytes:
        aead = self._require_aead()
        try:
            return await asyncio.to_thread(aead.decrypt, box.nonce, box.ciphertext, associated_data)
        except InvalidTag as e:
            raise DecryptionFailed("Ciphertext failed authentication") from e

    def fingerprint(self) -> str:
        """
        Non-reversible identifier of the current key.
        Safe to share: it is an HMAC of a fixed label, not the key.
        """
        if self._key is None:
            raise EncryptionNotInitialized()
        return hmac.new(self._key, b"eqvault/key-fingerprint/v1", hashlib.sha256).hexdigest()[:32]
