"""
Key-Share Encryption Module

Authenticated encryption for key-share material stored in the database.
Uses Fernet symmetric encryption (AES-128 in CBC mode with HMAC-SHA256),
wrapped in a small fixed-format envelope so format changes and corruption
are detectable without guessing.

Envelope layout (bytes):
    b"KS" | format version (1 byte) | scheme id (1 byte) | Fernet token

KEY ROTATION SUPPORT:
- KEYSHARE_ENCRYPTION_KEY: Primary key used for all NEW encryptions
- KEYSHARE_ENCRYPTION_KEY_OLD: Comma-separated list of previous keys for decryption
  Example: KEYSHARE_ENCRYPTION_KEY_OLD=oldkey1,oldkey2

Key rotation process:
1. Generate new key: python -m custody.core.keyshares.rotation --generate-key
2. Move current KEYSHARE_ENCRYPTION_KEY to KEYSHARE_ENCRYPTION_KEY_OLD (prepend to list)
3. Set new key as KEYSHARE_ENCRYPTION_KEY
4. Run: python -m custody.core.keyshares.rotation --rotate-keys
5. Run: python -m custody.core.keyshares.rotation --verify
6. After successful verification, remove old keys from KEYSHARE_ENCRYPTION_KEY_OLD

The cipher is built once at startup and passed to the stores explicitly.
Nothing in this module reads keys from the environment on its own.
"""
import logging
from typing import List, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from custody.core.keyshares.errors import DecryptionFailure

logger = logging.getLogger(__name__)

ENVELOPE_MAGIC = b"KS"
ENVELOPE_VERSION = 1
SCHEME_FERNET = 1

HEADER_LENGTH = len(ENVELOPE_MAGIC) + 2

SUPPORTED_SCHEMES = {SCHEME_FERNET: "fernet"}


def _load_fernet(key: str, label: str) -> Fernet:
    try:
        return Fernet(key.encode('utf-8'))
    except Exception as e:
        logger.error(f"Invalid {label}: {e}")
        raise ValueError(f"Invalid {label} - expected a urlsafe base64-encoded 32-byte Fernet key") from e


class ShareCipher:
    """
    Encrypts and decrypts key-share envelopes.

    Encrypts only with the primary key. Decrypts with the primary key
    or any of the old keys (MultiFernet tries them in order).

    Usage:
        cipher = ShareCipher(settings.keyshare_encryption_key, settings.old_encryption_keys)
        blob = cipher.encrypt(b"...")
        plaintext = cipher.decrypt(blob)
    """

    def __init__(self, primary_key: str, old_keys: Optional[Sequence[str]] = None):
        if not primary_key:
            error_msg = (
                "KEYSHARE_ENCRYPTION_KEY not set. "
                "Encryption is MANDATORY for key-share custody. "
                "Generate a key with: python -m custody.core.keyshares.rotation --generate-key"
            )
            logger.critical(error_msg)
            raise ValueError("KEYSHARE_ENCRYPTION_KEY is required - key shares are never stored unencrypted")

        self._primary = _load_fernet(primary_key, "primary encryption key")
        self._old: List[Fernet] = [
            _load_fernet(key, f"old encryption key #{i + 1}")
            for i, key in enumerate(old_keys or [])
        ]
        # MultiFernet encrypts with the first key and decrypts with any
        self._multi = MultiFernet([self._primary] + self._old)

        if self._old:
            logger.info(f"Key-share encryption initialized with {self.key_count} keys (1 primary + {len(self._old)} old)")
        else:
            logger.info("Key-share encryption initialized")

    @classmethod
    def from_settings(cls, settings) -> "ShareCipher":
        """Build the cipher from a Settings instance."""
        return cls(settings.keyshare_encryption_key, settings.old_encryption_keys)

    @property
    def has_old_keys(self) -> bool:
        return len(self._old) > 0

    @property
    def key_count(self) -> int:
        return 1 + len(self._old)

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        Encrypt plaintext with the PRIMARY key and wrap it in an envelope.

        Args:
            plaintext: Serialized share bytes

        Returns:
            Envelope bytes (header + Fernet token)
        """
        token = self._primary.encrypt(plaintext)
        return self._header() + token

    def decrypt(self, envelope: bytes) -> bytes:
        """
        Unwrap and decrypt an envelope with any configured key.

        Raises:
            DecryptionFailure: Header is malformed or unsupported, or no key
                authenticates the token (wrong key or tampered data)
        """
        token = self._unwrap(envelope)
        try:
            return self._multi.decrypt(token)
        except InvalidToken as e:
            logger.error("Failed to decrypt key-share envelope - no matching key found or data tampered")
            raise DecryptionFailure(
                "Ciphertext could not be authenticated with any configured key",
                reason=DecryptionFailure.INVALID_TOKEN,
            ) from e

    def needs_rotation(self, envelope: bytes) -> bool:
        """
        Check if an envelope was encrypted with an old key.

        Returns:
            True if the primary key alone cannot decrypt it
        """
        token = self._unwrap(envelope)
        try:
            self._primary.decrypt(token)
            return False
        except InvalidToken:
            return True

    def rotate(self, envelope: bytes) -> bytes:
        """
        Re-encrypt an envelope with the primary key.

        Raises:
            DecryptionFailure: If no configured key can decrypt the envelope
        """
        plaintext = self.decrypt(envelope)
        return self.encrypt(plaintext)

    def _header(self) -> bytes:
        return ENVELOPE_MAGIC + bytes([ENVELOPE_VERSION, SCHEME_FERNET])

    def _unwrap(self, envelope: bytes) -> bytes:
        if not envelope or len(envelope) <= HEADER_LENGTH or not envelope.startswith(ENVELOPE_MAGIC):
            raise DecryptionFailure(
                "Ciphertext is not a key-share envelope",
                reason=DecryptionFailure.MALFORMED_ENVELOPE,
            )

        version = envelope[len(ENVELOPE_MAGIC)]
        scheme = envelope[len(ENVELOPE_MAGIC) + 1]
        if version != ENVELOPE_VERSION:
            raise DecryptionFailure(
                f"Unsupported envelope version {version}",
                reason=DecryptionFailure.UNSUPPORTED_VERSION,
            )
        if scheme not in SUPPORTED_SCHEMES:
            raise DecryptionFailure(
                f"Unsupported encryption scheme {scheme}",
                reason=DecryptionFailure.UNSUPPORTED_SCHEME,
            )
        return envelope[HEADER_LENGTH:]


def describe_envelope(envelope: bytes) -> dict:
    """Return the header fields of an envelope without decrypting it."""
    if not envelope or len(envelope) < HEADER_LENGTH or not envelope.startswith(ENVELOPE_MAGIC):
        return {"valid": False}
    scheme = envelope[len(ENVELOPE_MAGIC) + 1]
    return {
        "valid": True,
        "version": envelope[len(ENVELOPE_MAGIC)],
        "scheme": SUPPORTED_SCHEMES.get(scheme, f"unknown({scheme})"),
    }


def generate_encryption_key() -> str:
    """
    Generate a new Fernet encryption key.

    Returns:
        Base64-encoded encryption key (suitable for KEYSHARE_ENCRYPTION_KEY)
    """
    return Fernet.generate_key().decode('utf-8')


__all__ = [
    'ShareCipher',
    'describe_envelope',
    'generate_encryption_key',
    'ENVELOPE_MAGIC',
    'ENVELOPE_VERSION',
    'SCHEME_FERNET',
]
