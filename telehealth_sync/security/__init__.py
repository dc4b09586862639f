"""
Security module for Telehealth Sync.

Provides PHI field encryption for the local store.
"""

from .encryption import DECRYPTION_FAILED_TEMPLATE, EncryptionCodec

__all__ = ["EncryptionCodec", "DECRYPTION_FAILED_TEMPLATE"]
