"""
End-to-end encryption core for the chat client.

Implements:
- X25519 key agreement with HKDF-derived pairwise session keys
- AES-256-GCM message envelopes
- Group keys wrapped per member
- A fallback decryption chain for historical message encodings
- Per-message negotiation between encryption and flagged plaintext
"""

from .errors import (
    CryptoError,
    CryptoUnavailable,
    InvalidPeerKey,
    UnwrapError,
    DecryptionFailedError,
    DirectoryError,
    NotFound,
    NetworkError,
)
from .models import (
    KeyPair,
    PeerPublicKeyRecord,
    SessionKeyCacheEntry,
    GroupKeyRecord,
    EncryptedMessage,
    MessageMeta,
    OutgoingMessage,
    DecryptionResult,
    DecryptionFailed,
    EncryptionPolicy,
    CapabilityReport,
)
from .session import CryptoSession

__all__ = [
    'CryptoError',
    'CryptoUnavailable',
    'InvalidPeerKey',
    'UnwrapError',
    'DecryptionFailedError',
    'DirectoryError',
    'NotFound',
    'NetworkError',
    'KeyPair',
    'PeerPublicKeyRecord',
    'SessionKeyCacheEntry',
    'GroupKeyRecord',
    'EncryptedMessage',
    'MessageMeta',
    'OutgoingMessage',
    'DecryptionResult',
    'DecryptionFailed',
    'EncryptionPolicy',
    'CapabilityReport',
    'CryptoSession',
]
