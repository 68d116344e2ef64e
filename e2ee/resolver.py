"""
Decryption resolver.

Inbound messages arrive in several historical encodings: flagged plaintext,
unflagged short plaintext from old clients, group-key ciphertext, and pairwise
ciphertext keyed by whatever public key the sender held at the time. Each
encoding is handled by one strategy, a total function from a message to
plaintext or None. Strategies run in order and the first hit wins.

A successful strategy stores the key that made it work, so the next message
from the same sender is resolved from the cache in one step. Failure of the
whole chain is terminal: the message is shown as a placeholder and is never
retried automatically.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from .cipher import MIN_ENVELOPE_SIZE, decrypt_message
from .errors import CryptoError, DecryptionFailedError, DirectoryError, InvalidPeerKey
from .keystore import KeyStore
from .models import (
    NO_KEY_PLACEHOLDER,
    Decrypted,
    DecryptionFailed,
    DecryptionResult,
    EncryptedMessage,
    KeyPair,
    SessionKeyCacheEntry,
)
from .session_keys import SessionKeyDeriver

logger = logging.getLogger(__name__)


@dataclass
class ResolveContext:
    """
    Per-message state shared by the strategies.

    Attributes:
        message: The inbound message
        counterpart: The other party of a direct conversation; the recipient
            when the message is one we sent ourselves
        is_own: True for our own messages read back from history
        key_pair: Our keypair, None in degraded mode
        tried_keys: Peer public keys already used for a derivation
    """
    message: EncryptedMessage
    counterpart: Optional[str]
    is_own: bool
    key_pair: Optional[KeyPair]
    tried_keys: Set[bytes] = field(default_factory=set)


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _try_decrypt(key: bytes, ciphertext: bytes) -> Optional[str]:
    try:
        return _decode(decrypt_message(key, ciphertext))
    except DecryptionFailedError:
        return None


class Strategy:
    """One decoding rule in the chain."""

    name = "strategy"

    async def attempt(self, ctx: ResolveContext, resolver: "DecryptionResolver") -> Optional[str]:
        raise NotImplementedError


class UnencryptedStrategy(Strategy):
    """Flagged plaintext, or anything too short to be an AEAD envelope"""

    name = "unencrypted"

    async def attempt(self, ctx, resolver):
        message = ctx.message
        if message.meta.unencrypted or len(message.ciphertext) < MIN_ENVELOPE_SIZE:
            return _decode(message.ciphertext)
        return None


class GroupKeyStrategy(Strategy):
    name = "group_key"

    async def attempt(self, ctx, resolver):
        group_id = ctx.message.group_id
        if not group_id:
            return None
        record = resolver.keystore.get_group_key(group_id)
        if record is None:
            return None
        return _try_decrypt(record.key, ctx.message.ciphertext)


class CachedSessionKeyStrategy(Strategy):
    name = "cached_session_key"

    async def attempt(self, ctx, resolver):
        if not ctx.counterpart:
            return None
        entry = resolver.keystore.get_session_key(ctx.counterpart)
        if entry is None:
            return None

        peer = resolver.keystore.get_peer_key(ctx.counterpart)
        if peer is not None and entry.is_stale(peer.version):
            logger.debug("Cached key for %s predates key version %d, not trusting it",
                         ctx.counterpart, peer.version)
            return None

        return _try_decrypt(entry.key, ctx.message.ciphertext)


class SenderPublicKeyStrategy(Strategy):
    """Derive from the public key the sender attached to the message"""

    name = "sender_public_key"

    async def attempt(self, ctx, resolver):
        sender_key = ctx.message.meta.sender_public_key
        if ctx.is_own or sender_key is None or ctx.key_pair is None:
            return None

        version = None
        peer = resolver.keystore.get_peer_key(ctx.counterpart) if ctx.counterpart else None
        if peer is not None and peer.public_key == sender_key:
            version = peer.version
        return resolver.derive_and_decrypt(ctx, sender_key, version)


class DirectoryStrategy(Strategy):
    """Fetch the counterpart's current key (one round trip) and derive again"""

    name = "directory"

    async def attempt(self, ctx, resolver):
        if not ctx.counterpart or ctx.key_pair is None or resolver.key_exchange is None:
            return None

        try:
            record = await asyncio.wait_for(
                resolver.key_exchange.fetch_peer_public_key(ctx.counterpart, use_cache=False, max_attempts=1),
                timeout=resolver.fetch_timeout
            )
        except asyncio.TimeoutError:
            logger.info("Directory lookup for %s timed out", ctx.counterpart)
            return None
        except DirectoryError as e:
            logger.info("Directory lookup for %s failed: %s", ctx.counterpart, e)
            return None

        if record.public_key in ctx.tried_keys:
            return None
        return resolver.derive_and_decrypt(ctx, record.public_key, record.version)


class GroupKeyRefreshStrategy(Strategy):
    """Fetch our wrapped group key again when the cached one is from an older epoch"""

    name = "group_key_refresh"

    async def attempt(self, ctx, resolver):
        group_id = ctx.message.group_id
        if not group_id or resolver.groups is None or ctx.key_pair is None:
            return None

        cached = resolver.keystore.get_group_key(group_id)
        try:
            record = await asyncio.wait_for(resolver.groups.fetch_group_key(group_id),
                                            timeout=resolver.fetch_timeout)
        except asyncio.TimeoutError:
            logger.info("Group key fetch for %s timed out", group_id)
            return None
        except CryptoError as e:
            logger.info("Group key fetch for %s failed: %s", group_id, e)
            return None

        if cached is not None and cached.key == record.key:
            return None
        return _try_decrypt(record.key, ctx.message.ciphertext)


def default_strategies() -> List[Strategy]:
    return [
        UnencryptedStrategy(),
        GroupKeyStrategy(),
        CachedSessionKeyStrategy(),
        SenderPublicKeyStrategy(),
        DirectoryStrategy(),
        GroupKeyRefreshStrategy(),
    ]


class DecryptionResolver:
    """
    Recovers plaintext from inbound messages through an ordered strategy chain.

    resolve() never raises; it returns a DecryptionResult or a terminal
    DecryptionFailed marker.
    """

    def __init__(self, keystore: KeyStore, key_exchange=None, groups=None,
                 deriver: Optional[SessionKeyDeriver] = None,
                 fetch_timeout: float = 5.0,
                 strategies: Optional[Iterable[Strategy]] = None):
        """
        Args:
            keystore: Session key store consulted and updated by the strategies
            key_exchange: KeyExchangeService for directory lookups; None disables them
            groups: GroupKeyManager for refreshing group keys; None disables it
            deriver: Session key deriver
            fetch_timeout: Bound for the directory lookup, in seconds
            strategies: Custom chain; defaults to default_strategies()
        """
        self.keystore = keystore
        self.key_exchange = key_exchange
        self.groups = groups
        self.deriver = deriver or SessionKeyDeriver()
        self.fetch_timeout = fetch_timeout
        self.strategies = list(strategies) if strategies is not None else default_strategies()

    def append_strategy(self, strategy: Strategy):
        """Add a decoder for a new encoding after the existing ones"""
        self.strategies.append(strategy)

    def derive_and_decrypt(self, ctx: ResolveContext, peer_public: bytes,
                           version: Optional[int]) -> Optional[str]:
        """Derive from a peer key, decrypt, and cache the key on success"""
        ctx.tried_keys.add(bytes(peer_public))
        try:
            key = self.deriver.derive(ctx.key_pair.private_key, peer_public)
        except InvalidPeerKey as e:
            logger.debug("Unusable public key for %s: %s", ctx.counterpart, e)
            return None

        plaintext = _try_decrypt(key, ctx.message.ciphertext)
        if plaintext is not None and ctx.counterpart:
            self.keystore.put_session_key(SessionKeyCacheEntry(ctx.counterpart, key, version, bytes(peer_public)))
        return plaintext

    def _context(self, message: EncryptedMessage) -> ResolveContext:
        is_own = message.sender_id == self.keystore.user_id
        if message.group_id:
            counterpart = None if is_own else message.sender_id
        else:
            counterpart = message.recipient_id if is_own else message.sender_id
        return ResolveContext(
            message=message,
            counterpart=counterpart or None,
            is_own=is_own,
            key_pair=self.keystore.key_pair,
        )

    async def resolve(self, message: EncryptedMessage) -> Decrypted:
        """
        Recover the plaintext of one message.

        Returns:
            DecryptionResult naming the strategy that worked, or DecryptionFailed
        """
        ctx = self._context(message)
        for strategy in self.strategies:
            try:
                plaintext = await strategy.attempt(ctx, self)
            except CryptoError as e:
                logger.debug("Strategy %s raised %s", strategy.name, e)
                plaintext = None
            if plaintext is not None:
                return DecryptionResult(plaintext=plaintext, strategy=strategy.name)

        if ctx.key_pair is None:
            logger.warning("Cannot decrypt message from %s: no local private key", message.sender_id)
            return DecryptionFailed(reason="no_private_key", placeholder=NO_KEY_PLACEHOLDER)

        logger.warning("All decryption attempts failed for message from %s (group=%s)",
                       message.sender_id, message.group_id)
        return DecryptionFailed(reason="all_strategies_failed")

    async def resolve_many(self, messages: Iterable[EncryptedMessage]) -> List[Decrypted]:
        """Resolve a batch concurrently; results keep the input order"""
        return list(await asyncio.gather(*(self.resolve(m) for m in messages)))
