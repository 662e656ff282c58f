"""
Key-Share Custody Store

Persists one encrypted MPC key share per owning profile and serves it
back decrypted. The share is opaque to this module.

Policies:
- create is a strict insert: a second create for the same owner raises
  DuplicateRecord instead of overwriting.
- update is an explicit upsert, executed as the database's native
  INSERT ... ON CONFLICT DO UPDATE, so concurrent updates are ordered by
  the database and readers never observe a partial write.
- get returns None when the owner has no share.
- delete raises NotFound when the owner has no share. It also removes the
  owner's key mapping in the same transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from custody.core.database.encryption import describe_envelope
from custody.core.database.models import KeyMapping, KeyShare, utcnow
from custody.core.keyshares.base import CustodyRepository, audit_logger, validate_owner_id
from custody.core.keyshares.errors import DuplicateRecord, NotFound

logger = logging.getLogger(__name__)


@dataclass
class KeyShareInfo:
    """
    Metadata of a stored share (never the share itself).

    Attributes:
        owner_id: Owning profile
        created_at: First write (naive UTC)
        updated_at: Last write (naive UTC)
        envelope_version: Encryption envelope format version
        scheme: Encryption scheme name
    """
    owner_id: str
    created_at: datetime
    updated_at: datetime
    envelope_version: Optional[int] = None
    scheme: Optional[str] = None


def upsert_statement(dialect_name: str, table, values: dict, update_values: dict, conflict_column):
    """
    Build a native single-statement upsert for the given dialect.

    Raises:
        RuntimeError: If the dialect has no atomic upsert we know how to emit
    """
    if dialect_name in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect_name == "postgresql" else sqlite.insert
        stmt = insert(table).values(**values)
        return stmt.on_conflict_do_update(index_elements=[conflict_column], set_=update_values)
    if dialect_name in ("mysql", "mariadb"):
        stmt = mysql.insert(table).values(**values)
        return stmt.on_duplicate_key_update(**update_values)
    raise RuntimeError(f"Atomic upsert not supported for dialect '{dialect_name}'")


class KeyShareStore(CustodyRepository):
    """
    Custody store for encrypted key shares.

    Usage:
        store = KeyShareStore(get_session_factory(), ShareCipher.from_settings(settings))
        await store.create("profile-1", share)
        share = await store.get("profile-1")
    """

    async def create(self, owner_id: str, share: Any, timeout: Optional[float] = None) -> KeyShareInfo:
        """
        Encrypt and insert the share for an owner that has none yet.

        Raises:
            DuplicateRecord: Owner already has a share
            InvalidShare: Share cannot be serialized
            StoreUnavailable: Database unreachable or timed out
        """
        validate_owner_id(owner_id)
        envelope = self.seal(owner_id, share)

        async def work(session):
            record = KeyShare(owner_id=owner_id, ciphertext=envelope)
            session.add(record)
            try:
                await session.flush()
            except IntegrityError as e:
                logger.warning(f"Key share already exists for owner {owner_id}")
                raise DuplicateRecord(f"Key share already exists for owner {owner_id}", owner_id=owner_id) from e
            return self._info(record.owner_id, record.created_at, record.updated_at, envelope)

        info = await self.run("create", owner_id, work, timeout=timeout, commit=True)
        audit_logger.info(f"keyshare.create owner={owner_id}")
        return info

    async def get(self, owner_id: str, timeout: Optional[float] = None) -> Optional[Any]:
        """
        Fetch and decrypt the owner's share.

        Returns:
            The share, or None if the owner has none

        Raises:
            DecryptionFailure: Ciphertext undecryptable with the configured keys
            DeserializationFailure: Decrypted bytes are not a valid share
            StoreUnavailable: Database unreachable or timed out
        """
        validate_owner_id(owner_id)

        async def work(session):
            result = await session.execute(
                select(KeyShare.ciphertext).where(KeyShare.owner_id == owner_id)
            )
            return result.scalar_one_or_none()

        envelope = await self.run("get", owner_id, work, timeout=timeout)
        if envelope is None:
            logger.debug(f"No key share for owner {owner_id}")
            return None
        return self.unseal(owner_id, envelope)

    async def update(self, owner_id: str, share: Any, timeout: Optional[float] = None) -> KeyShareInfo:
        """
        Replace the owner's share, creating it if absent (upsert).

        Raises:
            InvalidShare: Share cannot be serialized
            StoreUnavailable: Database unreachable or timed out
        """
        validate_owner_id(owner_id)
        envelope = self.seal(owner_id, share)

        async def work(session):
            now = utcnow()
            stmt = upsert_statement(
                session.get_bind(KeyShare).dialect.name,
                KeyShare.__table__,
                values={"owner_id": owner_id, "ciphertext": envelope, "created_at": now, "updated_at": now},
                update_values={"ciphertext": envelope, "updated_at": now},
                conflict_column=KeyShare.__table__.c.owner_id,
            )
            await session.execute(stmt)
            result = await session.execute(
                select(KeyShare.created_at, KeyShare.updated_at).where(KeyShare.owner_id == owner_id)
            )
            created_at, updated_at = result.one()
            return self._info(owner_id, created_at, updated_at, envelope)

        info = await self.run("update", owner_id, work, timeout=timeout, commit=True)
        audit_logger.info(f"keyshare.update owner={owner_id}")
        return info

    async def delete(self, owner_id: str, timeout: Optional[float] = None) -> None:
        """
        Remove the owner's share and key mapping.

        Raises:
            NotFound: Owner has no share
            StoreUnavailable: Database unreachable or timed out
        """
        validate_owner_id(owner_id)

        async def work(session):
            result = await session.execute(delete(KeyShare).where(KeyShare.owner_id == owner_id))
            if result.rowcount == 0:
                raise NotFound(f"No key share for owner {owner_id}", owner_id=owner_id)
            mapping_result = await session.execute(delete(KeyMapping).where(KeyMapping.owner_id == owner_id))
            if mapping_result.rowcount:
                logger.debug(f"Removed key mapping for owner {owner_id}")

        await self.run("delete", owner_id, work, timeout=timeout, commit=True)
        audit_logger.info(f"keyshare.delete owner={owner_id}")

    async def exists(self, owner_id: str, timeout: Optional[float] = None) -> bool:
        """Check whether the owner has a share, without decrypting it."""
        validate_owner_id(owner_id)

        async def work(session):
            result = await session.execute(
                select(KeyShare.id).where(KeyShare.owner_id == owner_id)
            )
            return result.first() is not None

        return await self.run("exists", owner_id, work, timeout=timeout)

    @staticmethod
    def _info(owner_id, created_at, updated_at, envelope: bytes) -> KeyShareInfo:
        header = describe_envelope(envelope)
        return KeyShareInfo(
            owner_id=owner_id,
            created_at=created_at,
            updated_at=updated_at,
            envelope_version=header.get("version"),
            scheme=header.get("scheme"),
        )
