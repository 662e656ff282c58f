"""
Key-share custody errors.

Every failure of a custody operation surfaces as one of these types.
DecryptionFailure and DeserializationFailure are kept apart because they
call for different recovery: the first points at key configuration (or
tampering), the second at corrupted share data.
"""
from typing import Optional


class KeyShareError(Exception):
    """Base class for all custody errors."""

    def __init__(self, message: str, owner_id: Optional[str] = None):
        super().__init__(message)
        self.owner_id = owner_id


class NotFound(KeyShareError):
    """No record exists for the owner."""


class DuplicateRecord(KeyShareError):
    """A record already exists for the owner (strict create)."""


class DecryptionFailure(KeyShareError):
    """
    Stored ciphertext could not be decrypted with the configured keys.

    Attributes:
        reason: One of the reason constants below (e.g. INVALID_TOKEN)
    """

    MALFORMED_ENVELOPE = "malformed_envelope"
    UNSUPPORTED_VERSION = "unsupported_version"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    INVALID_TOKEN = "invalid_token"
    OWNER_MISMATCH = "owner_mismatch"

    def __init__(self, message: str, reason: str, owner_id: Optional[str] = None):
        super().__init__(message, owner_id=owner_id)
        self.reason = reason


class DeserializationFailure(KeyShareError):
    """Decrypted bytes are not a valid serialized share."""


class StoreUnavailable(KeyShareError):
    """The database could not be reached or the operation timed out."""


class InvalidShare(KeyShareError, ValueError):
    """The share value cannot be serialized."""
