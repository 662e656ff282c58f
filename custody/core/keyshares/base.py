"""
Shared plumbing for the custody repositories.

Each public operation is one request-scoped unit of work: a fresh async
session, at most one commit, bounded by a timeout. Database errors are
translated into the custody error taxonomy here, in one place.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.core.database.encryption import ShareCipher
from custody.core.keyshares.errors import (
    DecryptionFailure,
    KeyShareError,
    StoreUnavailable,
)
from custody.core.keyshares.serialization import deserialize_share, serialize_share

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("security.audit")


def validate_owner_id(owner_id: str) -> str:
    """Reject empty or non-string owner ids."""
    if not isinstance(owner_id, str) or not owner_id.strip():
        raise ValueError("owner_id must be a non-empty string")
    return owner_id


class CustodyRepository:
    """
    Base class for repositories holding encrypted per-owner records.

    Args:
        session_factory: Async session factory (see connection.get_session_factory)
        cipher: Process-wide ShareCipher
        timeout: Default per-operation timeout in seconds (None = no timeout)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cipher: ShareCipher,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.cipher = cipher
        self.timeout = timeout

    @classmethod
    def from_settings(cls, session_factory: async_sessionmaker, settings):
        """Build a repository from Settings (cipher + default timeout)."""
        return cls(
            session_factory,
            ShareCipher.from_settings(settings),
            timeout=settings.keyshare_operation_timeout,
        )

    def seal(self, owner_id: str, value: Any) -> bytes:
        """Serialize and encrypt a value bound to owner_id."""
        return self.cipher.encrypt(serialize_share(owner_id, value))

    def unseal(self, owner_id: str, envelope: bytes) -> Any:
        """
        Decrypt and deserialize an envelope read for owner_id.

        Raises:
            DecryptionFailure: Envelope undecryptable or bound to another owner
            DeserializationFailure: Decrypted bytes are not a share envelope
        """
        try:
            plaintext = self.cipher.decrypt(bytes(envelope))
        except DecryptionFailure as e:
            logger.error(f"DECRYPTION FAILURE for owner {owner_id}: {e.reason}")
            raise DecryptionFailure(str(e), reason=e.reason, owner_id=owner_id) from e

        try:
            bound_owner, value = deserialize_share(plaintext)
        except KeyShareError as e:
            logger.error(f"DATA CORRUPTION for owner {owner_id}: decrypted share is not a valid envelope")
            e.owner_id = owner_id
            raise

        if bound_owner != owner_id:
            logger.critical(f"Ciphertext stored for owner {owner_id} is bound to a different owner")
            raise DecryptionFailure(
                "Ciphertext is bound to a different owner",
                reason=DecryptionFailure.OWNER_MISMATCH,
                owner_id=owner_id,
            )
        return value

    async def run(
        self,
        operation: str,
        owner_id: str,
        work: Callable[[AsyncSession], Awaitable[Any]],
        timeout: Optional[float] = None,
        commit: bool = False,
    ) -> Any:
        """
        Run work(session) as one unit of work.

        A timeout or cancellation that lands after the commit was
        acknowledged reports success with the work's result. Before that
        point the transaction is rolled back and the caller gets
        StoreUnavailable (timeout) or the cancellation.
        """
        timeout = self.timeout if timeout is None else timeout
        state = {}

        async def unit():
            async with self.session_factory() as session:
                result = await work(session)
                state["result"] = result
                if commit:
                    await session.commit()
                    state["committed"] = True
            return result

        try:
            return await asyncio.wait_for(unit(), timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            if state.get("committed"):
                logger.info(f"{operation} for owner {owner_id} committed before it was interrupted - reporting success")
                return state["result"]
            if isinstance(e, asyncio.CancelledError):
                raise
            logger.error(f"{operation} for owner {owner_id} timed out after {timeout}s")
            raise StoreUnavailable(f"{operation} timed out after {timeout}s", owner_id=owner_id) from e
        except (OperationalError, DBAPIError) as e:
            logger.error(f"{operation} for owner {owner_id} failed - database unavailable: {e}")
            raise StoreUnavailable(f"{operation} failed: database unavailable", owner_id=owner_id) from e
