"""
SQLAlchemy Database Models for key-share custody

Stores:
- Key shares (one encrypted MPC server share per profile)
- Key mappings (profile -> key id inside the external MPC node)

Encryption:
- Secret material is encrypted at rest with Fernet inside a versioned envelope
- See custody/core/database/encryption.py for implementation
- Encrypted fields: key_shares.ciphertext, key_mappings.key_id
- Unencrypted fields: owner ids, public keys, algorithm, timestamps
"""
from sqlalchemy import Column, String, DateTime, LargeBinary, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are timezone-naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KeyShare(Base):
    """
    Encrypted server-side MPC key share.

    Exactly one row per owner (unique owner_id). The ciphertext column
    holds the encryption envelope, never plaintext.
    """
    __tablename__ = "key_shares"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(255), nullable=False)  # Profile id
    ciphertext = Column(LargeBinary, nullable=False)  # ENCRYPTED

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_key_shares_owner_id', 'owner_id', unique=True),
    )


class KeyMapping(Base):
    """
    Mapping from a profile to the key held by the external MPC node.
    """
    __tablename__ = "key_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(255), nullable=False)
    key_id = Column(LargeBinary, nullable=False)  # ENCRYPTED
    public_key = Column(String(512), nullable=False)
    key_algorithm = Column(String(32), nullable=False, default="ecdsa")

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_key_mappings_owner_id', 'owner_id', unique=True),
    )
