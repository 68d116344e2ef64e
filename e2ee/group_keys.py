"""
Group key management.

One random group key is generated per membership epoch and wrapped once per
member. The wrapping key is derived one-way from the member's own public key,
so rotation costs O(members) symmetric operations and no handshakes. This gives
up forward secrecy for group traffic; see DESIGN.md.

Every membership change must call rotate() so that a removed member cannot
read anything sent afterwards.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from .cipher import decrypt_message, encrypt_message, generate_key
from .errors import CryptoError, CryptoUnavailable, DecryptionFailedError, InvalidPeerKey, NotFound, UnwrapError
from .keystore import KeyStore
from .models import GroupKeyRecord
from .primitives import deserialize_public_key, hkdf_derive, sha256
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

GROUP_WRAP_INFO = b"e2ee-chat-group-wrap-v1"


def wrapping_key_for(public_key: bytes) -> bytes:
    """Derive the key that wraps group keys for the owner of public_key"""
    return hkdf_derive(sha256(public_key), GROUP_WRAP_INFO)


class GroupKeyManager:
    """
    Creates, wraps, rotates and fetches group keys.
    """

    def __init__(self, keystore: KeyStore, directory=None, retry_policy: Optional[RetryPolicy] = None):
        self.keystore = keystore
        self.directory = directory
        self.retry_policy = retry_policy or RetryPolicy()
        self._pending: Dict[str, asyncio.Task] = {}
        # Fetches cancelled by leave_group, and groups we left
        self._abandoned: Set[asyncio.Task] = set()
        self._left: Set[str] = set()

    def wrap_for_member(self, group_key: bytes, member_public_key: bytes, group_id: str = "") -> bytes:
        """
        Wrap a group key for one member.

        Args:
            group_key: 32-byte group key
            member_public_key: Member's raw public key
            group_id: Bound as associated data so copies cannot be moved between groups

        Raises:
            InvalidPeerKey: If the member key is malformed
        """
        deserialize_public_key(member_public_key)
        return encrypt_message(wrapping_key_for(member_public_key), group_key, group_id.encode())

    def unwrap_for_self(self, wrapped: bytes, my_public_key: bytes, group_id: str = "") -> bytes:
        """
        Open our own wrapped copy.

        Raises:
            UnwrapError: If the blob was not wrapped for this key and group
        """
        try:
            return decrypt_message(wrapping_key_for(my_public_key), wrapped, group_id.encode())
        except DecryptionFailedError as e:
            raise UnwrapError(f"Cannot unwrap group key for {group_id or 'group'}: {e}")

    def create_group_key(self, group_id: str, member_public_keys: Dict[str, bytes]) -> GroupKeyRecord:
        """
        Generate a fresh group key and wrap it for every member.

        Members with malformed keys are skipped and logged; they get no copy
        until they publish a valid key and the group rotates again.

        Args:
            group_id: Group identifier
            member_public_keys: member id -> raw public key

        Returns:
            The new record, already installed in the key store
        """
        self._left.discard(group_id)
        previous = self.keystore.get_group_key(group_id)
        group_key = generate_key()

        wrapped = {}
        for member_id, public_key in member_public_keys.items():
            try:
                wrapped[member_id] = self.wrap_for_member(group_key, public_key, group_id)
            except InvalidPeerKey as e:
                logger.warning("Skipping member %s of group %s: %s", member_id, group_id, e)

        record = GroupKeyRecord(
            group_id=group_id,
            key=group_key,
            wrapped_per_member=wrapped,
            version=previous.version + 1 if previous else 1
        )
        self.keystore.put_group_key(record)
        return record

    def rotate(self, group_id: str, remaining_member_public_keys: Dict[str, bytes]) -> GroupKeyRecord:
        """Regenerate the group key for the remaining members after a membership change"""
        record = self.create_group_key(group_id, remaining_member_public_keys)
        logger.info("Rotated key for group %s to version %d (%d members)",
                    group_id, record.version, len(record.wrapped_per_member))
        return record

    def encrypt_for_group(self, group_id: str, plaintext: bytes) -> bytes:
        """
        Encrypt a message with the current group key.

        Raises:
            CryptoError: If we hold no key for the group
        """
        record = self.keystore.get_group_key(group_id)
        if record is None:
            raise CryptoError(f"No key for group {group_id}")
        return encrypt_message(record.key, plaintext)

    async def publish_group_key(self, record: GroupKeyRecord) -> dict:
        """Upload the wrapped copies; the plain group key never leaves the device"""
        return await self.retry_policy.run(
            lambda: self.directory.put_group_key(record.group_id, record.wire_payload())
        )

    async def fetch_group_key(self, group_id: str) -> GroupKeyRecord:
        """
        Fetch and unwrap our copy of a group key.

        The record is cached only after the unwrap completes, so cancelling
        the fetch (see leave_group) never leaves a partial key behind.

        Raises:
            NotFound: If no copy was wrapped for us, we left the group, or
                leave_group abandoned this fetch
            UnwrapError: If our copy does not open with our key
            CryptoUnavailable: If we have no keypair
        """
        key_pair = self.keystore.key_pair
        if key_pair is None:
            raise CryptoUnavailable("No local keypair to unwrap group keys")
        if group_id in self._left:
            raise NotFound(f"Left group {group_id}")

        task = asyncio.ensure_future(
            self.retry_policy.run(lambda: self.directory.get_group_key(group_id))
        )
        self._pending[group_id] = task
        try:
            wrapped, version = await task
        except asyncio.CancelledError:
            # Only a cancel from leave_group is turned into a failure; our own
            # cancellation propagates
            if task not in self._abandoned:
                raise
            raise NotFound(f"Group key fetch for {group_id} abandoned") from None
        finally:
            self._abandoned.discard(task)
            if self._pending.get(group_id) is task:
                del self._pending[group_id]

        group_key = self.unwrap_for_self(wrapped, key_pair.public_key, group_id)
        record = GroupKeyRecord(group_id=group_id, key=group_key, version=version)
        self.keystore.put_group_key(record)
        return record

    def join_group(self, group_id: str):
        """Allow key fetches for a group again after leave_group"""
        self._left.discard(group_id)

    def leave_group(self, group_id: str):
        """Abandon any in-flight fetch, forget the group key and stop fetching it"""
        self._left.add(group_id)
        task = self._pending.pop(group_id, None)
        if task is not None and not task.done():
            self._abandoned.add(task)
            task.cancel()
        self.keystore.drop_group_key(group_id)
