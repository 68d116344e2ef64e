"""
Session-scoped key store.

Owns every key cache of one logged-in user: the local keypair, pairwise
session keys, group keys and the peer public keys last seen in the directory.
Services receive the store by reference instead of sharing module globals.

Cache writes are insert-or-overwrite only. Two coroutines racing on the same
peer both hold a valid key, so the last write wins and no lock is taken.
"""

import logging
from dataclasses import replace
from typing import Dict, Optional, Protocol

from .errors import CryptoError
from .models import GroupKeyRecord, KeyPair, PeerPublicKeyRecord, SessionKeyCacheEntry

logger = logging.getLogger(__name__)

KEYPAIR_SLOT = "keypair"
SESSION_KEYS_SLOT = "session_keys"


class KeyStoreBackend(Protocol):
    """Durable slots, implemented by client.storage.EncryptedStorage"""

    def save_keys(self, key_type: str, key_data: dict) -> None: ...

    def load_keys(self, key_type: str) -> Optional[dict]: ...

    def delete_keys(self, key_type: str) -> None: ...


class KeyStore:
    """
    Key caches for one user session.

    Only the keypair and the session-key cache are written through to the
    backend; group keys and peer keys live for the process only.
    """

    def __init__(self, user_id: str, backend: Optional[KeyStoreBackend] = None):
        self.user_id = user_id
        self.backend = backend
        self._key_pair: Optional[KeyPair] = None
        self.session_keys: Dict[str, SessionKeyCacheEntry] = {}
        self.group_keys: Dict[str, GroupKeyRecord] = {}
        self.peer_keys: Dict[str, PeerPublicKeyRecord] = {}

    def load(self) -> bool:
        """
        Restore the keypair and session keys from the backend.

        Returns:
            True if a keypair was found
        """
        if not self.backend:
            return self._key_pair is not None

        data = self.backend.load_keys(KEYPAIR_SLOT)
        if data:
            try:
                self._key_pair = KeyPair.from_dict(data)
            except (KeyError, ValueError, CryptoError) as e:
                logger.warning("Stored keypair is unreadable, ignoring it: %s", e)

        cached = self.backend.load_keys(SESSION_KEYS_SLOT) or {}
        for peer_id, entry in cached.items():
            try:
                self.session_keys[peer_id] = SessionKeyCacheEntry.from_dict(entry)
            except (KeyError, ValueError):
                logger.debug("Dropping unreadable session key entry for %s", peer_id)

        return self._key_pair is not None

    @property
    def key_pair(self) -> Optional[KeyPair]:
        return self._key_pair

    def set_key_pair(self, key_pair: KeyPair):
        """
        Install a freshly generated keypair; read-only until the next generation.

        Session keys were derived from the previous private key and are dropped.
        """
        self._key_pair = key_pair
        if self.backend:
            self.backend.save_keys(KEYPAIR_SLOT, key_pair.to_dict())
        if self.session_keys:
            self.clear_session_keys()

    def get_session_key(self, peer_id: str) -> Optional[SessionKeyCacheEntry]:
        return self.session_keys.get(peer_id)

    def put_session_key(self, entry: SessionKeyCacheEntry):
        """Insert or overwrite the entry for a peer"""
        self.session_keys[entry.peer_id] = entry
        self._flush_session_keys()

    def invalidate_session_key(self, peer_id: str):
        if self.session_keys.pop(peer_id, None) is not None:
            self._flush_session_keys()

    def get_peer_key(self, peer_id: str) -> Optional[PeerPublicKeyRecord]:
        return self.peer_keys.get(peer_id)

    def put_peer_key(self, record: PeerPublicKeyRecord) -> bool:
        """
        Remember a directory record.

        A newer version makes any session key derived from an older one
        untrustworthy, so that entry is dropped. An entry cached before any
        record was seen gets the record's version if it was derived from the
        same key, and is dropped otherwise.

        Returns:
            True if the record replaced a different key
        """
        previous = self.peer_keys.get(record.user_id)
        self.peer_keys[record.user_id] = record

        entry = self.session_keys.get(record.user_id)
        if entry is not None and entry.derived_from_version is None and entry.peer_public_key:
            if entry.peer_public_key == record.public_key:
                self.put_session_key(replace(entry, derived_from_version=record.version))
            else:
                logger.info("Cached session key for %s was derived from a superseded key, dropping it",
                            record.user_id)
                self.invalidate_session_key(record.user_id)
        elif entry is not None and entry.is_stale(record.version):
            logger.info("Peer %s rotated to key version %d, dropping cached session key",
                        record.user_id, record.version)
            self.invalidate_session_key(record.user_id)

        return previous is not None and previous.public_key != record.public_key

    def get_group_key(self, group_id: str) -> Optional[GroupKeyRecord]:
        return self.group_keys.get(group_id)

    def put_group_key(self, record: GroupKeyRecord):
        self.group_keys[record.group_id] = record

    def drop_group_key(self, group_id: str):
        self.group_keys.pop(group_id, None)

    def clear(self):
        """Forget everything, on logout"""
        self._key_pair = None
        self.session_keys.clear()
        self.group_keys.clear()
        self.peer_keys.clear()
        if self.backend:
            self.backend.delete_keys(KEYPAIR_SLOT)
            self.backend.delete_keys(SESSION_KEYS_SLOT)

    def clear_session_keys(self):
        """Full reset of derived keys; forces re-derivation against the directory"""
        self.session_keys.clear()
        if self.backend:
            self.backend.delete_keys(SESSION_KEYS_SLOT)

    def _flush_session_keys(self):
        if self.backend:
            self.backend.save_keys(
                SESSION_KEYS_SLOT,
                {peer_id: entry.to_dict() for peer_id, entry in self.session_keys.items()}
            )
