"""
Pairwise session key derivation.

Both sides of a conversation run X25519 with their own private key and the
other side's public key, then stretch the shared secret with HKDF. The result
depends only on the two keys, so history can be re-derived on demand.
"""

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .errors import InvalidPeerKey
from .primitives import deserialize_public_key, dh_exchange, hkdf_derive

SESSION_KEY_INFO = b"e2ee-chat-session-key-v1"


def derive_session_key(my_private: X25519PrivateKey, peer_public: bytes,
                       info: bytes = SESSION_KEY_INFO) -> bytes:
    """
    Derive the 256-bit AEAD key shared with a peer.

    Args:
        my_private: Our private key
        peer_public: Peer's raw public key bytes
        info: HKDF context string

    Returns:
        32-byte symmetric key

    Raises:
        InvalidPeerKey: If the peer key is malformed or degenerate
    """
    peer_key = deserialize_public_key(peer_public)
    try:
        shared = dh_exchange(my_private, peer_key)
    except ValueError as e:
        # Low-order points produce an all-zero secret
        raise InvalidPeerKey(f"Key agreement failed: {e}")
    return hkdf_derive(shared, info)


class SessionKeyDeriver:
    """Derives session keys with a fixed HKDF context."""

    def __init__(self, info: bytes = SESSION_KEY_INFO):
        self.info = info

    def derive(self, my_private: X25519PrivateKey, peer_public: bytes) -> bytes:
        return derive_session_key(my_private, peer_public, self.info)
