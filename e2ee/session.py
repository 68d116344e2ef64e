"""
Crypto session: the public boundary of the encryption core.

One CryptoSession exists per logged-in user. It owns the key store and wires
the key exchange, group key, resolver and negotiator services around it.
Nothing here raises to the caller: sends degrade to flagged plaintext and
receives degrade to a placeholder.
"""

import logging
from typing import Dict, Iterable, List, Optional

from .cipher import decrypt_message, encrypt_message
from .config import Settings
from .errors import CryptoError, DirectoryError, InvalidPeerKey, NotFound
from .group_keys import GroupKeyManager
from .key_exchange import KeyExchangeService
from .keystore import KeyStore
from .models import (
    CapabilityReport,
    Decrypted,
    DecryptionFailed,
    EncryptedMessage,
    EncryptionPolicy,
    GroupKeyRecord,
    MessageMeta,
    OutgoingMessage,
    PeerPublicKeyRecord,
    SessionKeyCacheEntry,
)
from .negotiator import CapabilityNegotiator
from .primitives import constant_time_compare, crypto_available
from .resolver import DecryptionResolver
from .session_keys import SessionKeyDeriver

logger = logging.getLogger(__name__)

RECIPIENT_NO_PRIVATE_KEY = "recipient_no_private_key"


class CryptoSession:
    """
    End-to-end encryption for one user session.
    """

    def __init__(self, user_id: str, directory, storage=None,
                 settings: Optional[Settings] = None, probe=None):
        """
        Args:
            user_id: Our user id
            directory: DirectoryClient or compatible object
            storage: Durable backend for the keypair and session key slots
            settings: Runtime settings; read from the environment when omitted
            probe: Override for the crypto availability probe
        """
        self.user_id = user_id
        self.settings = settings or Settings.from_env()
        retry_policy = self.settings.retry_policy()

        self.keystore = KeyStore(user_id, storage)
        self.negotiator = CapabilityNegotiator(
            min_encrypt_length=self.settings.min_encrypt_length,
            probe=probe or crypto_available
        )
        self.deriver = SessionKeyDeriver()
        self.key_exchange = KeyExchangeService(self.keystore, directory, retry_policy)
        self.groups = GroupKeyManager(self.keystore, directory, retry_policy)
        self.resolver = DecryptionResolver(
            self.keystore,
            key_exchange=self.key_exchange,
            groups=self.groups,
            deriver=self.deriver,
            fetch_timeout=self.settings.fetch_timeout
        )
        self.report: Optional[CapabilityReport] = None
        # Last encrypted message per recipient, for a plaintext resend on rejection
        self._pending: Dict[str, OutgoingMessage] = {}

    async def bootstrap(self) -> CapabilityReport:
        """
        Prepare the session after login.

        Loads stored keys, probes the platform, generates and publishes a
        keypair when needed. Without crypto primitives no key generation is
        attempted and the session runs in plaintext mode.

        Returns:
            The capability report to emit once to the routing layer
        """
        had_key = self.keystore.load()

        key_pair = None
        if self.negotiator.can_encrypt():
            key_pair = self.key_exchange.ensure_key_pair()
            if key_pair is not None:
                try:
                    await self.key_exchange.publish_public_key(key_pair.public_key)
                except DirectoryError as e:
                    state = "existing" if had_key else "new"
                    logger.warning("Could not publish %s public key: %s", state, e)

        self.report = self.negotiator.capability_report(has_private_key=key_pair is not None)
        return self.report

    async def _peer_record(self, peer_id: str) -> Optional[PeerPublicKeyRecord]:
        try:
            return await self.key_exchange.fetch_peer_public_key(peer_id, use_cache=False)
        except NotFound:
            return None
        except DirectoryError as e:
            logger.warning("Directory lookup for %s failed: %s", peer_id, e)
            # Fall back to the last record we saw, if any
            return self.keystore.get_peer_key(peer_id)

    def _session_key(self, record: PeerPublicKeyRecord, force: bool = False) -> bytes:
        """
        Session key for sending to a peer, derived from their current key.

        Raises:
            InvalidPeerKey: If the published key is unusable
        """
        entry = self.keystore.get_session_key(record.user_id)
        if not force and entry is not None and entry.derived_from_version == record.version:
            return entry.key

        key = self.deriver.derive(self.keystore.key_pair.private_key, record.public_key)
        self.keystore.put_session_key(SessionKeyCacheEntry(record.user_id, key, record.version, record.public_key))
        return key

    async def _group_key(self, group_id: str) -> Optional[GroupKeyRecord]:
        record = self.keystore.get_group_key(group_id)
        if record is not None:
            return record
        try:
            return await self.groups.fetch_group_key(group_id)
        except CryptoError as e:
            logger.info("No usable key for group %s: %s", group_id, e)
            return None

    def _plaintext(self, outgoing: OutgoingMessage) -> EncryptedMessage:
        return EncryptedMessage(
            sender_id=self.user_id,
            ciphertext=outgoing.text.encode("utf-8"),
            recipient_id=outgoing.recipient_id,
            group_id=outgoing.group_id,
            meta=MessageMeta(unencrypted=True)
        )

    async def encrypt_outgoing(self, outgoing: OutgoingMessage) -> Optional[EncryptedMessage]:
        """
        Build the wire message for an outgoing text.

        Returns:
            The message to send, flagged unencrypted when encryption is not
            possible; None only if our own envelope failed to verify, in which
            case nothing must be sent
        """
        policy, key = await self._decide(outgoing)
        if not policy.encrypt:
            logger.info("Sending without encryption to %s (%s)",
                        outgoing.group_id or outgoing.recipient_id, policy.reason)
            return self._plaintext(outgoing)

        plaintext = outgoing.text.encode("utf-8")
        envelope = encrypt_message(key, plaintext)

        # Refuse to send anything we could not read back ourselves
        try:
            verified = constant_time_compare(decrypt_message(key, envelope), plaintext)
        except CryptoError:
            verified = False
        if not verified:
            logger.error("Encryption verification failed; message to %s not sent",
                         outgoing.group_id or outgoing.recipient_id)
            return None

        if outgoing.recipient_id:
            self._pending[outgoing.recipient_id] = outgoing
        return EncryptedMessage(
            sender_id=self.user_id,
            ciphertext=envelope,
            recipient_id=outgoing.recipient_id,
            group_id=outgoing.group_id,
            meta=MessageMeta(sender_public_key=self.keystore.key_pair.public_key)
        )

    async def _decide(self, outgoing: OutgoingMessage):
        if not self.negotiator.can_encrypt():
            return self.negotiator.decide_policy(outgoing, recipient_has_public_key=False), None
        has_private_key = self.keystore.key_pair is not None

        if outgoing.group_id:
            record = await self._group_key(outgoing.group_id) if has_private_key else None
            policy = self.negotiator.decide_policy(
                outgoing,
                recipient_has_public_key=record is not None,
                key_available=record is not None
            )
            return policy, record.key if record else None

        peer = await self._peer_record(outgoing.recipient_id)
        policy = self.negotiator.decide_policy(
            outgoing,
            recipient_has_public_key=peer is not None,
            key_available=has_private_key
        )
        if not policy.encrypt:
            return policy, None

        try:
            key = self._session_key(peer, force=policy.rederive)
        except InvalidPeerKey as e:
            logger.warning("Published key of %s is unusable: %s", outgoing.recipient_id, e)
            return EncryptionPolicy(encrypt=False, reason="invalid_peer_key"), None
        return policy, key

    async def decrypt_incoming(self, message: EncryptedMessage) -> Decrypted:
        """Resolve the plaintext of an inbound or history message; never raises"""
        try:
            if (message.group_id and not message.meta.unencrypted
                    and self.keystore.get_group_key(message.group_id) is None
                    and self.keystore.key_pair is not None):
                await self._group_key(message.group_id)
            return await self.resolver.resolve(message)
        except Exception as e:
            logger.exception("Resolver failed unexpectedly: %s", e)
            return DecryptionFailed(reason="internal_error")

    async def decrypt_history(self, messages: Iterable[EncryptedMessage]) -> List[Decrypted]:
        return [await self.decrypt_incoming(m) for m in messages]

    def handle_send_rejection(self, reason: str, recipient_id: str) -> Optional[EncryptedMessage]:
        """
        React to the server refusing an encrypted message.

        When the recipient reported no private key, the pending message is
        re-issued unencrypted.

        Returns:
            The replacement message to send, or None
        """
        if reason != RECIPIENT_NO_PRIVATE_KEY:
            return None
        pending = self._pending.pop(recipient_id, None)
        if pending is None:
            logger.warning("Recipient %s cannot decrypt and no pending message is cached", recipient_id)
            return None
        logger.info("Recipient %s has no private key, resending unencrypted", recipient_id)
        return self._plaintext(pending)

    async def rotate_keys(self) -> bool:
        """Regenerate and publish our keypair; False if that was not possible"""
        if not self.negotiator.can_encrypt():
            return False
        try:
            await self.key_exchange.regenerate_key_pair()
        except CryptoError as e:
            logger.warning("Key rotation incomplete: %s", e)
            return False
        return True

    async def rotate_group(self, group_id: str, member_ids: Iterable[str]) -> Optional[GroupKeyRecord]:
        """
        Regenerate a group key for the current members and publish it.

        Called on every membership change. Members without a published key
        receive no copy.
        """
        if self.keystore.key_pair is None:
            return None

        member_keys = {self.user_id: self.keystore.key_pair.public_key}
        for member_id in member_ids:
            if member_id == self.user_id:
                continue
            peer = await self._peer_record(member_id)
            if peer is not None:
                member_keys[member_id] = peer.public_key

        record = self.groups.rotate(group_id, member_keys)
        try:
            await self.groups.publish_group_key(record)
        except DirectoryError as e:
            logger.warning("Could not publish key for group %s: %s", group_id, e)
        return record

    def join_group(self, group_id: str):
        self.groups.join_group(group_id)

    def leave_group(self, group_id: str):
        self.groups.leave_group(group_id)

    def logout(self):
        self._pending.clear()
        self.keystore.clear()
