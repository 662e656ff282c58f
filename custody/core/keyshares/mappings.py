"""
Key Mappings

Links a profile to the key held by the external MPC node (the node's key
id plus the shared public key). Written after a successful key-generation
ceremony; the key id is encrypted at rest with the same envelope as the
shares. Removed together with the share by KeyShareStore.delete.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from custody.core.database.models import KeyMapping
from custody.core.keyshares.base import CustodyRepository, audit_logger, validate_owner_id
from custody.core.keyshares.errors import DeserializationFailure, DuplicateRecord, NotFound

logger = logging.getLogger(__name__)

DEFAULT_KEY_ALGORITHM = "ecdsa"


@dataclass
class KeyMappingEntry:
    """Decrypted view of a key mapping."""
    owner_id: str
    key_id: str
    public_key: str
    key_algorithm: str
    created_at: Optional[datetime] = None


class KeyMappingStore(CustodyRepository):
    """Custody store for profile -> MPC key id mappings."""

    async def create(
        self,
        owner_id: str,
        key_id: str,
        public_key: str,
        key_algorithm: str = DEFAULT_KEY_ALGORITHM,
        timeout: Optional[float] = None,
    ) -> KeyMappingEntry:
        """
        Record the mapping for an owner.

        Raises:
            DuplicateRecord: Owner already has a mapping
            StoreUnavailable: Database unreachable or timed out
        """
        validate_owner_id(owner_id)
        if not key_id or not public_key:
            raise ValueError("key_id and public_key are required")
        sealed_key_id = self.seal(owner_id, key_id)

        async def work(session):
            record = KeyMapping(
                owner_id=owner_id,
                key_id=sealed_key_id,
                public_key=public_key,
                key_algorithm=key_algorithm,
            )
            session.add(record)
            try:
                await session.flush()
            except IntegrityError as e:
                raise DuplicateRecord(f"Key mapping already exists for owner {owner_id}", owner_id=owner_id) from e
            return KeyMappingEntry(
                owner_id=owner_id,
                key_id=key_id,
                public_key=public_key,
                key_algorithm=key_algorithm,
                created_at=record.created_at,
            )

        entry = await self.run("create_mapping", owner_id, work, timeout=timeout, commit=True)
        audit_logger.info(f"keymapping.create owner={owner_id} algorithm={key_algorithm}")
        return entry

    async def get(self, owner_id: str, timeout: Optional[float] = None) -> Optional[KeyMappingEntry]:
        """
        Fetch the owner's mapping with the key id decrypted.

        Returns:
            KeyMappingEntry, or None if the owner has no mapping
        """
        validate_owner_id(owner_id)

        async def work(session):
            result = await session.execute(select(KeyMapping).where(KeyMapping.owner_id == owner_id))
            record = result.scalar_one_or_none()
            if record is None:
                return None
            return record.key_id, record.public_key, record.key_algorithm, record.created_at

        row = await self.run("get_mapping", owner_id, work, timeout=timeout)
        if row is None:
            return None

        sealed_key_id, public_key, key_algorithm, created_at = row
        key_id = self.unseal(owner_id, sealed_key_id)
        if not isinstance(key_id, str):
            raise DeserializationFailure("Decrypted key id is not a string", owner_id=owner_id)

        return KeyMappingEntry(
            owner_id=owner_id,
            key_id=key_id,
            public_key=public_key,
            key_algorithm=key_algorithm,
            created_at=created_at,
        )

    async def delete(self, owner_id: str, timeout: Optional[float] = None) -> None:
        """
        Remove the owner's mapping.

        Raises:
            NotFound: Owner has no mapping
        """
        validate_owner_id(owner_id)

        async def work(session):
            result = await session.execute(delete(KeyMapping).where(KeyMapping.owner_id == owner_id))
            if result.rowcount == 0:
                raise NotFound(f"No key mapping for owner {owner_id}", owner_id=owner_id)

        await self.run("delete_mapping", owner_id, work, timeout=timeout, commit=True)
        audit_logger.info(f"keymapping.delete owner={owner_id}")
