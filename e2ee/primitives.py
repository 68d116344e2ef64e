"""
Cryptographic Primitives for End-to-End Encryption

Key-agreement keys, key derivation and encoding helpers shared by the
session, group and resolver layers.
"""

import base64
import binascii
import hashlib
import hmac
from typing import Tuple

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import CryptoError, CryptoUnavailable, InvalidPeerKey

# Curve is fixed across the system: raw X25519 keys are always 32 bytes
PUBLIC_KEY_SIZE = 32
SYMMETRIC_KEY_SIZE = 32


def crypto_available() -> bool:
    """
    Probe whether the backend can do X25519 and AES-GCM.

    Returns:
        True if every primitive we depend on works
    """
    try:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        private_key = X25519PrivateKey.generate()
        private_key.exchange(private_key.public_key())
        AESGCM(AESGCM.generate_key(bit_length=256))
        return True
    except Exception:
        return False


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key agreement.

    Returns:
        Tuple of (private_key, public_key)

    Raises:
        CryptoUnavailable: If the backend cannot generate X25519 keys
    """
    try:
        private_key = X25519PrivateKey.generate()
    except Exception as e:
        raise CryptoUnavailable(f"X25519 not supported: {e}")
    return private_key, private_key.public_key()


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    return private_key.exchange(public_key)


def hkdf_derive(key_material: bytes, info: bytes, length: int = SYMMETRIC_KEY_SIZE) -> bytes:
    """
    HKDF-SHA256 with no salt.

    Args:
        key_material: Input key material
        info: Context string binding the output to its use

    Returns:
        Derived key of the requested length
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=None,
        info=info
    )
    return hkdf.derive(key_material)


def sha256(data: bytes) -> bytes:
    """SHA-256 digest"""
    return hashlib.sha256(data).digest()


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """
    Deserialize bytes to X25519 public key.

    Raises:
        InvalidPeerKey: If the bytes are not a 32-byte X25519 key
    """
    if not isinstance(key_bytes, (bytes, bytearray)) or len(key_bytes) != PUBLIC_KEY_SIZE:
        raise InvalidPeerKey("Public key must be 32 raw bytes")
    try:
        return X25519PublicKey.from_public_bytes(bytes(key_bytes))
    except ValueError as e:
        raise InvalidPeerKey(f"Invalid public key: {e}")


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    """Serialize X25519 private key to raw bytes (local storage only)"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    """Deserialize raw bytes to X25519 private key"""
    try:
        return X25519PrivateKey.from_private_bytes(key_bytes)
    except ValueError as e:
        raise CryptoError(f"Invalid private key: {e}")


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Strict base64 decode.

    Raises:
        ValueError: If the text is not valid base64
    """
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Not base64: {e}")


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
