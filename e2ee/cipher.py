"""
AEAD message cipher.

Envelope layout is IV (12 bytes) || AES-256-GCM ciphertext || tag (16 bytes).
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoError, DecryptionFailedError

NONCE_SIZE = 12
TAG_SIZE = 16
# Anything shorter cannot be an AEAD envelope
MIN_ENVELOPE_SIZE = NONCE_SIZE + TAG_SIZE


def generate_key() -> bytes:
    """Generate a random 256-bit AES key"""
    return AESGCM.generate_key(bit_length=256)


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    if len(key) != 32:
        raise CryptoError("Encryption key must be 32 bytes")

    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce + ciphertext


def decrypt_message(key: bytes, envelope: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        envelope: nonce + encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionFailedError: If the envelope is malformed or fails authentication
    """
    if len(envelope) < MIN_ENVELOPE_SIZE:
        raise DecryptionFailedError("Ciphertext too short")
    if len(key) != 32:
        raise DecryptionFailedError("Decryption key must be 32 bytes")

    nonce = envelope[:NONCE_SIZE]
    actual_ciphertext = envelope[NONCE_SIZE:]

    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, actual_ciphertext, associated_data)
    except InvalidTag:
        raise DecryptionFailedError("Authentication tag mismatch")
