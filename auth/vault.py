"""
auth/vault.py -- Password-derived encryption for a user's stored credential.

Serialized form (single text column):

    <salt hex>:<iv hex>:<ciphertext hex>

Scheme:
  Key:    PBKDF2-HMAC-SHA512(password, salt, >=100_000 iterations) -> 32 bytes.
  Cipher: AES-256-GCM with a fresh 96-bit IV per encryption. The GCM tag is
          appended to the ciphertext, so a wrong password or a flipped bit
          fails tag verification instead of yielding garbage plaintext.

The salt is the hex string itself (its UTF-8 bytes feed PBKDF2), so the value
stored in users.salt and the first segment of the serialization are directly
comparable.

Security notes:
  Derived keys live in a bytearray that is zeroed on every exit path. Python
  cannot scrub the immutable copy inside the cryptography backend; zeroing
  the buffer we own is the part we control.

  DecryptionFailed never says whether the password or the ciphertext was at
  fault, and never carries the underlying exception text.

  InvalidFormat is raised before any key derivation so garbage input does
  not cost a full PBKDF2 run.

Layer rule: no imports from api/, coordination/, or core/.
"""

from __future__ import annotations

import ctypes
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger("supportdesk.auth.vault")

SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32
DEFAULT_ITERATIONS = 100_000


class VaultError(Exception):
    """Base class for vault conditions."""


class InvalidFormat(VaultError):
    """The serialized secret does not have exactly three segments."""


class DecryptionFailed(VaultError):
    """Wrong password, wrong salt, or tampered ciphertext -- deliberately indistinguishable."""


def _secure_zero(buf: bytearray) -> None:
    """Overwrite a bytearray with zeros to remove key material from memory."""
    n = len(buf)
    if n == 0:
        return
    ctypes.memset((ctypes.c_char * n).from_buffer(buf), 0, n)


class EncryptionVault:
    """Encrypts and decrypts one secret string per user.

    Usage:
        vault = EncryptionVault()
        salt = vault.generate_salt()
        blob = vault.encrypt("tok-123", "pw", salt)
        vault.decrypt(blob, "pw", salt)  # -> "tok-123"

    Every method is synchronous and CPU-bound (PBKDF2). Async callers should
    run encrypt/decrypt in a worker thread.
    """

    def __init__(self, iterations: int = DEFAULT_ITERATIONS) -> None:
        if iterations < DEFAULT_ITERATIONS:
            raise ValueError(f"iterations must be at least {DEFAULT_ITERATIONS}")
        self.iterations = iterations

    @staticmethod
    def generate_salt() -> str:
        """Return 16 random bytes, hex-encoded."""
        return os.urandom(SALT_BYTES).hex()

    def derive_key(self, password: str, salt: str) -> bytearray:
        """Stretch (password, salt) into a 256-bit key. Caller must zero the result."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_BYTES,
            salt=salt.encode("utf-8"),
            iterations=self.iterations,
        )
        return bytearray(kdf.derive(password.encode("utf-8")))

    def encrypt(self, plaintext: str, password: str, salt: str) -> str:
        key = self.derive_key(password, salt)
        try:
            iv = os.urandom(IV_BYTES)
            ciphertext = AESGCM(bytes(key)).encrypt(iv, plaintext.encode("utf-8"), None)
        finally:
            _secure_zero(key)
        return f"{salt}:{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, serialized: str, password: str, salt: str | None = None) -> str:
        """Decrypt a salt:iv:ciphertext string.

        An explicit salt overrides the embedded one (key rotation); otherwise
        the embedded salt is used.

        Raises:
            InvalidFormat: wrong segment count. No key is derived.
            DecryptionFailed: anything else that goes wrong.
        """
        parts = serialized.split(":")
        if len(parts) != 3:
            raise InvalidFormat("Invalid encrypted text format")
        stored_salt, iv_hex, ct_hex = parts

        key = self.derive_key(password, salt or stored_salt)
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ct_hex)
            plaintext = AESGCM(bytes(key)).decrypt(iv, ciphertext, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError, UnicodeDecodeError):
            # ValueError covers bad hex and an IV of the wrong length.
            logger.warning("Credential decryption failed [redacted] (%d ciphertext chars)", len(ct_hex))
            raise DecryptionFailed("Decryption failed. Invalid password or corrupted data.") from None
        finally:
            _secure_zero(key)
