"""
Encrypted MPC key-share custody.

Stores live in custody.core.keyshares.store and
custody.core.keyshares.mappings; the rotation procedure in
custody.core.keyshares.rotation.
"""
from custody.core.keyshares.errors import (
    KeyShareError,
    NotFound,
    DuplicateRecord,
    DecryptionFailure,
    DeserializationFailure,
    StoreUnavailable,
    InvalidShare,
)

__all__ = [
    "KeyShareError",
    "NotFound",
    "DuplicateRecord",
    "DecryptionFailure",
    "DeserializationFailure",
    "StoreUnavailable",
    "InvalidShare",
]
