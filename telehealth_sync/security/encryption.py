"""PHI field encryption for local storage.

Single string fields (patient full name, appointment notes) are encrypted with
AES-256-CBC and stored as base64 text.

WARNING: the key and IV are fixed per deployment, so identical plaintext
always yields identical ciphertext. This is kept only so existing rows stay
readable; migrating to a per-record nonce with an authenticated mode (e.g.
AES-GCM) is tracked as a separate data migration.
"""

import base64
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from telehealth_sync.config import get_settings
from telehealth_sync.config.base import ENCRYPTION_IV_LENGTH, ENCRYPTION_KEY_LENGTH
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)

DECRYPTION_FAILED_TEMPLATE = "[Decryption Failed: {ciphertext}]"


def _fit(material: str, length: int) -> bytes:
    """UTF-8 encode, NUL-pad and truncate to ``length`` bytes."""
    return material.encode("utf-8").ljust(length, b"\0")[:length]


class EncryptionCodec:
    """Encrypts and decrypts a single PHI string field."""

    def __init__(self, key: Optional[str] = None, iv: Optional[str] = None) -> None:
        """Derive the key and IV once; they are reused for every call."""
        if key is None or iv is None:
            settings = get_settings()
            key = settings.encryption_key if key is None else key
            iv = settings.encryption_iv if iv is None else iv

        self._key = _fit(key, ENCRYPTION_KEY_LENGTH)
        self._iv = _fit(iv, ENCRYPTION_IV_LENGTH)

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(self._iv))

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt ``plaintext``; empty or ``None`` input is returned as is."""
        if not plaintext:
            return plaintext

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = self._cipher().encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return base64.b64encode(ciphertext).decode("ascii")

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """Decrypt ``ciphertext``.

        Corrupted input or a wrong key does not raise: the result is the
        ``[Decryption Failed: ...]`` sentinel wrapping the original value, so
        read paths survive bad historical rows. Callers that must not show
        the sentinel should check ``is_decryption_failure``.
        """
        if not ciphertext:
            return ciphertext

        try:
            raw = base64.b64decode(ciphertext.encode("ascii"), validate=True)

            decryptor = self._cipher().decryptor()
            padded = decryptor.update(raw) + decryptor.finalize()

            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()

            return data.decode("utf-8")
        except ValueError as e:
            # Covers bad base64, bad block length, bad padding and bad UTF-8
            logger.warning("phi_decryption_failed", error=type(e).__name__)
            return DECRYPTION_FAILED_TEMPLATE.format(ciphertext=ciphertext)

    @staticmethod
    def is_decryption_failure(value: Optional[str]) -> bool:
        """Whether ``value`` is the sentinel produced by a failed decrypt."""
        return bool(value) and value.startswith("[Decryption Failed: ")  # type: ignore[union-attr]
