"""
Unit tests for the key-share custody store.

Runs the async store against SQLite (aiosqlite) and checks the custody
lifecycle: strict create, upsert update, not-found handling, tamper
detection, concurrency and timeouts.
"""
import asyncio
import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from custody.core.database.encryption import ShareCipher, generate_encryption_key
from custody.core.database.models import KeyMapping, KeyShare
from custody.core.keyshares.errors import (
    DecryptionFailure,
    DeserializationFailure,
    DuplicateRecord,
    InvalidShare,
    NotFound,
    StoreUnavailable,
)
from custody.core.keyshares.serialization import serialize_share
from custody.core.keyshares.store import KeyShareStore


async def _raw_ciphertext(session_factory, owner_id):
    async with session_factory() as session:
        result = await session.execute(select(KeyShare.ciphertext).where(KeyShare.owner_id == owner_id))
        return result.scalar_one()


async def _write_raw_ciphertext(session_factory, owner_id, ciphertext):
    async with session_factory() as session:
        await session.execute(
            update(KeyShare).where(KeyShare.owner_id == owner_id).values(ciphertext=ciphertext)
        )
        await session.commit()


class TestCustodyLifecycle:
    """create -> get -> update -> delete"""

    @pytest.mark.asyncio
    async def test_profile_scenario(self, store):
        await store.create("profile-1", {"x": 1})
        assert await store.get("profile-1") == {"x": 1}

        await store.update("profile-1", {"x": 2})
        assert await store.get("profile-1") == {"x": 2}

        await store.delete("profile-1")
        assert await store.get("profile-1") is None

    @pytest.mark.asyncio
    async def test_round_trip_nested_share(self, store):
        share = {
            "key_id": "5f1c",
            "public_key": "04" + "ab" * 64,
            "x_i": "0x" + "11" * 32,
            "paillier": {"n": "123456789", "lambda": ["1", "2"]},
            "threshold": 2,
            "eph": None,
        }
        await store.create("profile-2", share)

        assert await store.get("profile-2") == share

    @pytest.mark.asyncio
    async def test_round_trip_bytes_share(self, store):
        share = b"\x00\x01binary share\xff"
        await store.create("profile-3", share)

        assert await store.get("profile-3") == share

    @pytest.mark.asyncio
    async def test_create_returns_metadata(self, store):
        info = await store.create("profile-4", {"x": 1})

        assert info.owner_id == "profile-4"
        assert info.created_at is not None
        assert info.updated_at is not None
        assert info.envelope_version == 1
        assert info.scheme == "fernet"

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get("nobody") is None

    @pytest.mark.asyncio
    async def test_exists(self, store):
        assert await store.exists("profile-5") is False
        await store.create("profile-5", {"x": 1})
        assert await store.exists("profile-5") is True


class TestCreatePolicy:

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self, store):
        await store.create("profile-1", {"x": 1})

        with pytest.raises(DuplicateRecord) as exc_info:
            await store.create("profile-1", {"x": 2})
        assert exc_info.value.owner_id == "profile-1"

        # Original share untouched
        assert await store.get("profile-1") == {"x": 1}

    @pytest.mark.asyncio
    async def test_invalid_share_writes_nothing(self, store):
        with pytest.raises(InvalidShare):
            await store.create("profile-1", {"bad": object()})

        assert await store.exists("profile-1") is False

    @pytest.mark.asyncio
    async def test_lossy_shares_rejected(self, store):
        with pytest.raises(InvalidShare):
            await store.create("profile-1", {1: "a", 2: "b"})
        with pytest.raises(InvalidShare):
            await store.update("profile-1", {"t": (1, 2)})

        assert await store.exists("profile-1") is False

    @pytest.mark.asyncio
    async def test_empty_owner_rejected(self, store):
        with pytest.raises(ValueError):
            await store.create("", {"x": 1})
        with pytest.raises(ValueError):
            await store.get("   ")


class TestUpdatePolicy:

    @pytest.mark.asyncio
    async def test_update_creates_when_absent(self, store):
        await store.update("profile-1", {"x": 1})

        assert await store.get("profile-1") == {"x": 1}

    @pytest.mark.asyncio
    async def test_update_replaces_and_keeps_created_at(self, store):
        created = await store.create("profile-1", {"x": 1})
        updated = await store.update("profile-1", {"x": 2})

        assert updated.created_at == created.created_at
        assert updated.updated_at >= created.updated_at
        assert await store.get("profile-1") == {"x": 2}

    @pytest.mark.asyncio
    async def test_update_with_per_table_binds(self, async_engine, cipher):
        factory = async_sessionmaker(
            binds={KeyShare: async_engine, KeyMapping: async_engine},
            expire_on_commit=False,
        )
        bound_store = KeyShareStore(factory, cipher)

        await bound_store.update("profile-1", {"x": 1})
        await bound_store.update("profile-1", {"x": 2})
        assert await bound_store.get("profile-1") == {"x": 2}

    @pytest.mark.asyncio
    async def test_single_row_per_owner(self, store, session_factory):
        await store.update("profile-1", {"x": 1})
        await store.update("profile-1", {"x": 2})
        await store.update("profile-1", {"x": 3})

        async with session_factory() as session:
            result = await session.execute(select(KeyShare).where(KeyShare.owner_id == "profile-1"))
            assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_updates_leave_one_value(self, store):
        share_a = {"party": "A", "x_i": "a" * 64}
        share_b = {"party": "B", "x_i": "b" * 64}
        await store.create("profile-1", {"party": "initial"})

        await asyncio.gather(
            store.update("profile-1", share_a),
            store.update("profile-1", share_b),
        )

        assert await store.get("profile-1") in (share_a, share_b)

    @pytest.mark.asyncio
    async def test_operations_on_different_owners_in_parallel(self, store):
        owners = [f"profile-{i}" for i in range(10)]

        await asyncio.gather(*(store.create(o, {"owner": o}) for o in owners))
        results = await asyncio.gather(*(store.get(o) for o in owners))

        assert results == [{"owner": o} for o in owners]


class TestDeletePolicy:

    @pytest.mark.asyncio
    async def test_delete_missing_raises_not_found(self, store):
        with pytest.raises(NotFound):
            await store.delete("nobody")

    @pytest.mark.asyncio
    async def test_delete_twice(self, store):
        await store.create("profile-1", {"x": 1})
        await store.delete("profile-1")

        with pytest.raises(NotFound):
            await store.delete("profile-1")


class TestConfidentiality:

    @pytest.mark.asyncio
    async def test_stored_value_is_encrypted(self, store, session_factory):
        await store.create("profile-1", {"secret": "super-secret-share-value"})

        raw = await _raw_ciphertext(session_factory, "profile-1")
        assert b"super-secret-share-value" not in raw
        assert raw.startswith(b"KS")


class TestTamperDetection:

    @pytest.mark.asyncio
    async def test_flipped_byte_raises_decryption_failure(self, store, session_factory):
        await store.create("profile-1", {"x": 1})
        raw = bytearray(await _raw_ciphertext(session_factory, "profile-1"))
        middle = len(raw) // 2
        raw[middle] = ord("A") if raw[middle] != ord("A") else ord("B")
        await _write_raw_ciphertext(session_factory, "profile-1", bytes(raw))

        with pytest.raises(DecryptionFailure) as exc_info:
            await store.get("profile-1")
        assert exc_info.value.reason == DecryptionFailure.INVALID_TOKEN
        assert exc_info.value.owner_id == "profile-1"

    @pytest.mark.asyncio
    async def test_wrong_key_raises_decryption_failure(self, store, session_factory):
        await store.create("profile-1", {"x": 1})
        other_store = KeyShareStore(session_factory, ShareCipher(generate_encryption_key()))

        with pytest.raises(DecryptionFailure):
            await other_store.get("profile-1")

    @pytest.mark.asyncio
    async def test_valid_ciphertext_with_garbage_plaintext(self, store, session_factory):
        await store.create("profile-1", {"x": 1})
        await _write_raw_ciphertext(session_factory, "profile-1", store.cipher.encrypt(b"not a share"))

        with pytest.raises(DeserializationFailure):
            await store.get("profile-1")

    @pytest.mark.asyncio
    async def test_ciphertext_moved_between_owners(self, store, session_factory):
        await store.create("profile-1", {"owner": 1})
        await store.create("profile-2", {"owner": 2})
        stolen = await _raw_ciphertext(session_factory, "profile-1")
        await _write_raw_ciphertext(session_factory, "profile-2", stolen)

        with pytest.raises(DecryptionFailure) as exc_info:
            await store.get("profile-2")
        assert exc_info.value.reason == DecryptionFailure.OWNER_MISMATCH

    @pytest.mark.asyncio
    async def test_old_key_readable_during_rotation(self, session_factory, encryption_key):
        old_store = KeyShareStore(session_factory, ShareCipher(encryption_key))
        await old_store.create("profile-1", {"x": 1})

        rotated = KeyShareStore(session_factory, ShareCipher(generate_encryption_key(), [encryption_key]))
        assert await rotated.get("profile-1") == {"x": 1}

        # New writes use the new primary key only
        await rotated.update("profile-1", {"x": 2})
        with pytest.raises(DecryptionFailure):
            await old_store.get("profile-1")


class _SlowCloseSession:
    """Session wrapper whose close is slow, so a timeout lands after commit."""

    def __init__(self, session, delay):
        self._session = session
        self._delay = delay

    async def __aenter__(self):
        return await self._session.__aenter__()

    async def __aexit__(self, *exc):
        try:
            await asyncio.sleep(self._delay)
        finally:
            await self._session.close()


class TestTimeoutsAndAvailability:

    @pytest.mark.asyncio
    async def test_timeout_before_commit(self, store):
        async def slow_work(session):
            await asyncio.sleep(2)

        with pytest.raises(StoreUnavailable, match="timed out"):
            await store.run("update", "profile-1", slow_work, timeout=0.05, commit=True)

    @pytest.mark.asyncio
    async def test_timeout_after_commit_reports_success(self, session_factory, cipher):
        slow_store = KeyShareStore(
            lambda: _SlowCloseSession(session_factory(), delay=2),
            cipher,
        )

        info = await slow_store.update("profile-1", {"x": 1}, timeout=0.5)
        assert info.owner_id == "profile-1"

        store = KeyShareStore(session_factory, cipher)
        assert await store.get("profile-1") == {"x": 1}

    @pytest.mark.asyncio
    async def test_cancel_after_commit_reports_success(self, session_factory, cipher):
        slow_store = KeyShareStore(
            lambda: _SlowCloseSession(session_factory(), delay=2),
            cipher,
        )

        task = asyncio.create_task(slow_store.update("profile-1", {"x": 1}))
        await asyncio.sleep(0.5)
        task.cancel()

        info = await task
        assert info.owner_id == "profile-1"
        store = KeyShareStore(session_factory, cipher)
        assert await store.get("profile-1") == {"x": 1}

    @pytest.mark.asyncio
    async def test_cancel_before_commit_propagates(self, store):
        async def slow_work(session):
            await asyncio.sleep(2)

        task = asyncio.create_task(store.run("update", "profile-1", slow_work, commit=True))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert await store.exists("profile-1") is False

    @pytest.mark.asyncio
    async def test_unreachable_database(self, tmp_path, cipher):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'custody.db'}")
        store = KeyShareStore(async_sessionmaker(engine), cipher)
        try:
            with pytest.raises(StoreUnavailable):
                await store.get("profile-1")
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_default_timeout_from_settings(self, session_factory, encryption_key):
        from custody.core.config import Settings

        settings = Settings(
            database_url="sqlite:///:memory:",
            keyshare_encryption_key=encryption_key,
            keyshare_operation_timeout=3.5,
        )
        store = KeyShareStore.from_settings(session_factory, settings)

        assert store.timeout == 3.5
        await store.create("profile-1", {"x": 1})
        assert await store.get("profile-1") == {"x": 1}
