"""
Error taxonomy for the end-to-end encryption core.

Components raise these; the session facade converts them into values so
nothing escapes to the UI layer.
"""


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class CryptoUnavailable(CryptoError):
    """The platform lacks the primitives needed for encryption"""
    pass


class InvalidPeerKey(CryptoError):
    """Peer public key is malformed or not on the system curve"""
    pass


class UnwrapError(CryptoError):
    """A wrapped group key could not be opened with our key"""
    pass


class DecryptionFailedError(CryptoError):
    """AEAD authentication failed or the envelope is malformed"""
    pass


class DirectoryError(CryptoError):
    """Base class for directory service failures"""
    pass


class NotFound(DirectoryError):
    """The directory has no key for the requested id"""
    pass


class NetworkError(DirectoryError):
    """The directory could not be reached or answered with a server error"""
    pass
