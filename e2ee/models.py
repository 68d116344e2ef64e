"""
Data model for keys, caches and messages.

Wire dictionaries use camelCase keys and base64 for binary fields, matching
what the transport and directory exchange.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .cipher import MIN_ENVELOPE_SIZE
from .primitives import (
    b64decode,
    b64encode,
    deserialize_private_key,
    serialize_private_key,
)

DECRYPTION_ERROR_PLACEHOLDER = "[Decryption Error]"
NO_KEY_PLACEHOLDER = "[Encrypted - no key]"


@dataclass
class KeyPair:
    """
    Local ECDH key-agreement keypair.

    Attributes:
        private_key: X25519 private key, never leaves the device
        public_key: Raw 32-byte public key as published to the directory
    """
    private_key: X25519PrivateKey
    public_key: bytes

    def to_dict(self) -> Dict:
        """Convert to dictionary for the local key slot"""
        return {
            'public': b64encode(self.public_key),
            'private': b64encode(serialize_private_key(self.private_key)),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'KeyPair':
        """Create from the local key slot dictionary"""
        return cls(
            private_key=deserialize_private_key(b64decode(data['private'])),
            public_key=b64decode(data['public']),
        )


@dataclass(frozen=True)
class PeerPublicKeyRecord:
    """A peer's public key as published in the directory."""
    user_id: str
    public_key: bytes
    version: int = 1

    def to_dict(self) -> Dict:
        return {
            'userId': self.user_id,
            'publicKey': b64encode(self.public_key),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PeerPublicKeyRecord':
        return cls(
            user_id=str(data['userId']),
            public_key=b64decode(data['publicKey']),
            version=int(data.get('version', 1)),
        )


@dataclass(frozen=True)
class SessionKeyCacheEntry:
    """
    Cached pairwise key.

    Attributes:
        peer_id: Counterpart user id
        key: 32-byte AEAD key
        derived_from_version: Directory version of the peer key used, if known
        peer_public_key: The peer key it was derived from, used to stamp the
            version once the directory record is seen
    """
    peer_id: str
    key: bytes
    derived_from_version: Optional[int] = None
    peer_public_key: Optional[bytes] = None

    def is_stale(self, current_version: Optional[int]) -> bool:
        """True once the peer has published a newer key than the one we derived from"""
        if current_version is None or self.derived_from_version is None:
            return False
        return self.derived_from_version < current_version

    def to_dict(self) -> Dict:
        return {
            'peerId': self.peer_id,
            'key': b64encode(self.key),
            'version': self.derived_from_version,
            'peerKey': b64encode(self.peer_public_key) if self.peer_public_key else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SessionKeyCacheEntry':
        return cls(
            peer_id=data['peerId'],
            key=b64decode(data['key']),
            derived_from_version=data.get('version'),
            peer_public_key=b64decode(data['peerKey']) if data.get('peerKey') else None,
        )


@dataclass
class GroupKeyRecord:
    """
    Shared group key and its per-member wrapped copies.

    Attributes:
        group_id: Group identifier
        key: 32-byte group AEAD key
        wrapped_per_member: member id -> wrapped key blob
        version: Incremented on every rotation
    """
    group_id: str
    key: bytes
    wrapped_per_member: Dict[str, bytes] = field(default_factory=dict)
    version: int = 1

    def wire_payload(self) -> Dict:
        """Body for publishing the wrapped copies; the key itself is never included"""
        return {
            'version': self.version,
            'wrapped': {member: b64encode(blob) for member, blob in self.wrapped_per_member.items()},
        }


@dataclass(frozen=True)
class MessageMeta:
    sender_public_key: Optional[bytes] = None
    unencrypted: bool = False

    def to_dict(self) -> Dict:
        data = {}
        if self.sender_public_key is not None:
            data['senderPublicKey'] = b64encode(self.sender_public_key)
        if self.unencrypted:
            data['unencrypted'] = True
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'MessageMeta':
        data = data or {}
        sender_key = data.get('senderPublicKey')
        return cls(
            sender_public_key=_decode_lenient(sender_key) if sender_key else None,
            unencrypted=bool(data.get('unencrypted', False)),
        )


@dataclass(frozen=True)
class EncryptedMessage:
    """
    Message as carried by the transport. Immutable; plaintext is derived.

    Attributes:
        sender_id: Sending user id
        ciphertext: IV || AEAD output, or UTF-8 text when unencrypted
        recipient_id: Direct-message recipient
        group_id: Group for group messages
        meta: Sender public key and the unencrypted flag
    """
    sender_id: str
    ciphertext: bytes
    recipient_id: Optional[str] = None
    group_id: Optional[str] = None
    meta: MessageMeta = field(default_factory=MessageMeta)

    def to_wire(self) -> Dict:
        """Convert to the transport payload"""
        data = {'senderId': self.sender_id}
        if self.group_id is not None:
            data['groupId'] = self.group_id
        else:
            data['recipientId'] = self.recipient_id
        if self.meta.unencrypted or len(self.ciphertext) < MIN_ENVELOPE_SIZE:
            data['ciphertext'] = self.ciphertext.decode('utf-8', errors='replace')
        else:
            data['ciphertext'] = b64encode(self.ciphertext)
        data['meta'] = self.meta.to_dict()
        return data

    @classmethod
    def from_wire(cls, data: Dict) -> 'EncryptedMessage':
        """
        Create from a transport payload.

        Older clients sent plaintext in the ciphertext field without the
        unencrypted flag; text that is not base64, or decodes to something too
        short to be an envelope, is kept as raw UTF-8 bytes.
        """
        meta = MessageMeta.from_dict(data.get('meta'))
        raw = data.get('ciphertext') or ''
        ciphertext = raw.encode('utf-8')
        if not meta.unencrypted:
            try:
                decoded = b64decode(raw)
            except ValueError:
                decoded = b''
            if len(decoded) >= MIN_ENVELOPE_SIZE:
                ciphertext = decoded
        return cls(
            sender_id=str(data.get('senderId', '')),
            ciphertext=ciphertext,
            recipient_id=data.get('recipientId'),
            group_id=data.get('groupId'),
            meta=meta,
        )


@dataclass(frozen=True)
class OutgoingMessage:
    text: str
    recipient_id: Optional[str] = None
    group_id: Optional[str] = None


@dataclass(frozen=True)
class DecryptionResult:
    """Recovered plaintext and the strategy that produced it."""
    plaintext: str
    strategy: str
    ok: bool = True


@dataclass(frozen=True)
class DecryptionFailed:
    """Terminal marker; the message is shown as a placeholder and never retried."""
    reason: str
    placeholder: str = DECRYPTION_ERROR_PLACEHOLDER
    ok: bool = False

    @property
    def plaintext(self) -> str:
        return self.placeholder


Decrypted = Union[DecryptionResult, DecryptionFailed]


@dataclass(frozen=True)
class EncryptionPolicy:
    encrypt: bool
    reason: str = ""
    rederive: bool = False


@dataclass(frozen=True)
class CapabilityReport:
    """Emitted once after bootstrap for the routing layer."""
    has_private_key: bool
    has_crypto_primitive: bool

    def to_dict(self) -> Dict:
        return {
            'hasPrivateKey': self.has_private_key,
            'hasCryptoPrimitive': self.has_crypto_primitive,
        }


def _decode_lenient(text: str) -> bytes:
    """Base64 when it parses, raw UTF-8 otherwise"""
    try:
        return b64decode(text)
    except ValueError:
        return text.encode('utf-8')
