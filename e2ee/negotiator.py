"""
Capability negotiation: decides per outgoing message whether to encrypt.
"""

import enum
import logging
from typing import Callable, Dict, Optional

from .config import DEFAULT_MIN_ENCRYPT_LENGTH
from .models import CapabilityReport, EncryptionPolicy, OutgoingMessage
from .primitives import crypto_available

logger = logging.getLogger(__name__)


class CryptoState(enum.Enum):
    UNKNOWN = "unknown"
    CRYPTO_AVAILABLE = "crypto_available"
    CRYPTO_UNAVAILABLE = "crypto_unavailable"


class RecipientState(enum.Enum):
    CAN_ENCRYPT = "can_encrypt"
    MUST_FALLBACK = "must_fallback"


class CapabilityNegotiator:
    """
    Session-wide and per-recipient encryption capability.

    The platform probe runs once; afterwards each recipient is tracked as
    CAN_ENCRYPT or MUST_FALLBACK. A recipient may move from MUST_FALLBACK to
    CAN_ENCRYPT mid-session once they publish a key, which asks the caller to
    derive a fresh session key.
    """

    def __init__(self, min_encrypt_length: int = DEFAULT_MIN_ENCRYPT_LENGTH,
                 probe: Callable[[], bool] = crypto_available):
        """
        Args:
            min_encrypt_length: Plaintext shorter than this is sent unencrypted
            probe: Returns True when crypto primitives work on this platform
        """
        self.min_encrypt_length = min_encrypt_length
        self.probe = probe
        self.state = CryptoState.UNKNOWN
        self.recipients: Dict[str, RecipientState] = {}

    def resolve(self) -> CryptoState:
        """Run the platform probe once; later calls return the same state"""
        if self.state is CryptoState.UNKNOWN:
            available = False
            try:
                available = bool(self.probe())
            except Exception as e:
                logger.debug("Crypto probe raised: %s", e)
            self.state = CryptoState.CRYPTO_AVAILABLE if available else CryptoState.CRYPTO_UNAVAILABLE
            if not available:
                logger.warning("Cryptographic primitives unavailable; messages will be sent unencrypted")
        return self.state

    def can_encrypt(self) -> bool:
        return self.resolve() is CryptoState.CRYPTO_AVAILABLE

    def recipient_state(self, recipient_id: str) -> Optional[RecipientState]:
        return self.recipients.get(recipient_id)

    def decide_policy(self, outgoing: OutgoingMessage, recipient_has_public_key: bool,
                      key_available: bool = True) -> EncryptionPolicy:
        """
        Decide whether one outgoing message is encrypted.

        Args:
            outgoing: The message about to be sent
            recipient_has_public_key: The recipient (or group) has key material published
            key_available: A session or group key could be obtained

        Returns:
            EncryptionPolicy; rederive is set when a recipient just became encryptable
        """
        if not self.can_encrypt():
            return EncryptionPolicy(encrypt=False, reason="crypto_unavailable")

        target = outgoing.group_id or outgoing.recipient_id or ""
        previous = self.recipients.get(target)

        if not recipient_has_public_key:
            self.recipients[target] = RecipientState.MUST_FALLBACK
            return EncryptionPolicy(encrypt=False, reason="recipient_no_public_key")
        if not key_available:
            self.recipients[target] = RecipientState.MUST_FALLBACK
            return EncryptionPolicy(encrypt=False, reason="no_key")

        self.recipients[target] = RecipientState.CAN_ENCRYPT
        rederive = previous is RecipientState.MUST_FALLBACK
        if rederive:
            logger.info("%s can now receive encrypted messages", target)

        if len(outgoing.text) < self.min_encrypt_length:
            return EncryptionPolicy(encrypt=False, reason="below_min_length", rederive=rederive)

        return EncryptionPolicy(encrypt=True, reason="ok", rederive=rederive)

    def capability_report(self, has_private_key: bool) -> CapabilityReport:
        return CapabilityReport(
            has_private_key=has_private_key and self.can_encrypt(),
            has_crypto_primitive=self.can_encrypt(),
        )
