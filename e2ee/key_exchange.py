"""
Key exchange: local keypair lifecycle and directory publish/fetch.
"""

import logging
from typing import Optional

from .errors import CryptoUnavailable, NetworkError
from .keystore import KeyStore
from .models import KeyPair, PeerPublicKeyRecord
from .primitives import generate_dh_keypair, serialize_public_key
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class KeyExchangeService:
    """
    Generates, publishes and fetches X25519 public keys.

    After a regeneration peers may still encrypt to our old public key for a
    while; the resulting decrypt failures are handled by the resolver.
    """

    def __init__(self, keystore: KeyStore, directory, retry_policy: Optional[RetryPolicy] = None):
        """
        Args:
            keystore: Session key store, written on generation
            directory: DirectoryClient or any object with the same coroutines
            retry_policy: Policy for directory calls
        """
        self.keystore = keystore
        self.directory = directory
        self.retry_policy = retry_policy or RetryPolicy()
        self.degraded = False

    def generate_key_pair(self) -> KeyPair:
        """
        Generate a new keypair and install it in the key store.

        Raises:
            CryptoUnavailable: If the platform cannot generate keys
        """
        private_key, public_key = generate_dh_keypair()
        key_pair = KeyPair(private_key=private_key, public_key=serialize_public_key(public_key))
        self.keystore.set_key_pair(key_pair)
        logger.info("Generated new key-agreement keypair for %s", self.keystore.user_id)
        return key_pair

    def ensure_key_pair(self) -> Optional[KeyPair]:
        """
        Return the stored keypair, generating one on first login.

        Never raises: without crypto primitives the session switches to
        degraded mode and None is returned.
        """
        if self.keystore.key_pair is not None:
            return self.keystore.key_pair
        try:
            return self.generate_key_pair()
        except CryptoUnavailable as e:
            self.degraded = True
            logger.warning("Key generation unavailable, continuing without encryption: %s", e)
            return None

    async def publish_public_key(self, public_key: Optional[bytes] = None) -> PeerPublicKeyRecord:
        """
        Publish our public key to the directory.

        Returns:
            The directory record (acknowledgement with the new version)

        Raises:
            NetworkError: If the directory stays unreachable
        """
        if public_key is None:
            if self.keystore.key_pair is None:
                raise CryptoUnavailable("No local keypair to publish")
            public_key = self.keystore.key_pair.public_key

        user_id = self.keystore.user_id
        record = await self.retry_policy.run(lambda: self.directory.put_public_key(user_id, public_key))
        logger.info("Published public key for %s (version %d)", user_id, record.version)
        return record

    async def fetch_peer_public_key(self, peer_id: str, use_cache: bool = True,
                                    max_attempts: Optional[int] = None) -> PeerPublicKeyRecord:
        """
        Fetch a peer's current public key.

        Args:
            peer_id: Peer user id
            use_cache: Return the last seen record without a round trip
            max_attempts: Override the policy, e.g. 1 for a single round trip

        Raises:
            NotFound: If the peer never published a key
            NetworkError: If the directory is unreachable
        """
        if use_cache:
            cached = self.keystore.get_peer_key(peer_id)
            if cached is not None:
                return cached

        record = await self.retry_policy.run(
            lambda: self.directory.get_public_key(peer_id),
            max_attempts=max_attempts
        )
        if self.keystore.put_peer_key(record):
            logger.info("Public key of %s changed (version %d)", peer_id, record.version)
        return record

    async def regenerate_key_pair(self) -> KeyPair:
        """
        Rotate our keypair and publish the new public key.

        Raises:
            CryptoUnavailable: If the platform cannot generate keys
            NetworkError: If publishing fails; the new key stays installed
        """
        key_pair = self.generate_key_pair()
        try:
            await self.publish_public_key(key_pair.public_key)
        except NetworkError:
            logger.warning("Rotated keypair could not be published yet")
            raise
        return key_pair
