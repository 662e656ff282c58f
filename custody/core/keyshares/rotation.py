"""
Key Rotation

Re-encrypts every stored envelope with the primary key, and verifies that
no envelope still depends on an old key. This is the only supported way
to change the encryption key: a bare key swap would turn every existing
record into a DecryptionFailure.

Runs as a separate administrative process on a sync session. It is safe
to run while the service is live: new writes already use the primary key,
and each row is only rewritten if its ciphertext is unchanged since it was
read (optimistic locking).

Usage:
    python -m custody.core.keyshares.rotation --check-status
    python -m custody.core.keyshares.rotation --rotate-keys --dry-run
    python -m custody.core.keyshares.rotation --rotate-keys
    python -m custody.core.keyshares.rotation --verify
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from custody.core.database.encryption import ShareCipher, generate_encryption_key
from custody.core.database.models import KeyMapping, KeyShare, utcnow
from custody.core.keyshares.errors import DecryptionFailure

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("security.audit")

# Encrypted columns, keyed by table name
ENCRYPTED_COLUMNS = {
    KeyShare.__tablename__: (KeyShare.__table__, "ciphertext"),
    KeyMapping.__tablename__: (KeyMapping.__table__, "key_id"),
}

MAX_SAMPLES = 10


@dataclass
class RotationReport:
    """Outcome of a rotation or verification run."""
    checked: int = 0
    rotated: int = 0
    skipped: int = 0
    concurrent: int = 0
    needs_rotation: int = 0
    errors: int = 0
    dry_run: bool = False
    per_table: Dict[str, Dict[str, int]] = field(default_factory=dict)
    samples: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.errors == 0 and self.needs_rotation == 0

    def _sample(self, table_name: str, owner_id: str):
        if len(self.samples) < MAX_SAMPLES:
            self.samples.append(f"{table_name}.{owner_id}")


def _iter_batches(db: Session, table, column_name: str, batch_size: int):
    """Yield batches of (owner_id, envelope) using cursor pagination on owner_id."""
    column = table.c[column_name]
    last_owner = None
    while True:
        query = select(table.c.owner_id, column).order_by(table.c.owner_id).limit(batch_size)
        if last_owner is not None:
            query = query.where(table.c.owner_id > last_owner)
        batch = db.execute(query).fetchall()
        if not batch:
            return
        last_owner = batch[-1][0]
        yield batch


def rotate_keys(db: Session, cipher: ShareCipher, batch_size: int = 100, dry_run: bool = False) -> RotationReport:
    """
    Re-encrypt every envelope still under an old key with the primary key.

    Commits once per batch (never in dry-run mode).

    Args:
        db: Sync SQLAlchemy session
        cipher: Cipher with the new primary key and the old keys loaded
        batch_size: Rows per batch
        dry_run: Count what would change without writing

    Returns:
        RotationReport
    """
    report = RotationReport(dry_run=dry_run)

    for table_name, (table, column_name) in ENCRYPTED_COLUMNS.items():
        stats = {"rotated": 0, "skipped": 0, "concurrent": 0, "errors": 0}
        column = table.c[column_name]

        for batch in _iter_batches(db, table, column_name, batch_size):
            for owner_id, envelope in batch:
                report.checked += 1
                envelope = bytes(envelope)
                try:
                    if not cipher.needs_rotation(envelope):
                        stats["skipped"] += 1
                        continue
                    rotated = cipher.rotate(envelope)
                except DecryptionFailure as e:
                    logger.error(f"Cannot rotate {table_name} for owner {owner_id}: {e.reason}")
                    stats["errors"] += 1
                    report._sample(table_name, owner_id)
                    continue

                if dry_run:
                    stats["rotated"] += 1
                    continue

                result = db.execute(
                    update(table)
                    .where(table.c.owner_id == owner_id, column == envelope)
                    .values({column_name: rotated, "updated_at": utcnow()})
                )
                if result.rowcount == 0:
                    # Rewritten by the live service in the meantime, already on the primary key
                    stats["concurrent"] += 1
                else:
                    stats["rotated"] += 1

            if not dry_run:
                db.commit()

        logger.info(
            f"{table_name}: rotated={stats['rotated']} skipped={stats['skipped']} "
            f"concurrent={stats['concurrent']} errors={stats['errors']}"
        )
        report.per_table[table_name] = stats
        report.rotated += stats["rotated"]
        report.skipped += stats["skipped"]
        report.concurrent += stats["concurrent"]
        report.errors += stats["errors"]

    if not dry_run:
        audit_logger.info(f"keyshare.rotate rotated={report.rotated} errors={report.errors}")
    return report


def verify_primary_key(db: Session, cipher: ShareCipher, batch_size: int = 100) -> RotationReport:
    """
    Check that every envelope decrypts with the PRIMARY key alone.

    Returns:
        RotationReport with needs_rotation (only an old key decrypts) and
        errors (malformed, tampered or under an unknown key) counts
    """
    report = RotationReport()

    for table_name, (table, column_name) in ENCRYPTED_COLUMNS.items():
        stats = {"checked": 0, "needs_rotation": 0, "errors": 0}
        for batch in _iter_batches(db, table, column_name, batch_size):
            for owner_id, envelope in batch:
                stats["checked"] += 1
                try:
                    if cipher.needs_rotation(bytes(envelope)):
                        # Old key readable -> rotate; no key readable -> error
                        cipher.decrypt(bytes(envelope))
                        stats["needs_rotation"] += 1
                        report._sample(table_name, owner_id)
                except DecryptionFailure as e:
                    logger.error(f"Unreadable envelope in {table_name} for owner {owner_id}: {e.reason}")
                    stats["errors"] += 1
                    report._sample(table_name, owner_id)

        report.per_table[table_name] = stats
        report.checked += stats["checked"]
        report.needs_rotation += stats["needs_rotation"]
        report.errors += stats["errors"]

    return report


def main(argv=None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description="Key-share encryption key management and rotation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
FULL KEY ROTATION WORKFLOW:
===========================

1. GENERATE new key:
   python -m custody.core.keyshares.rotation --generate-key

2. UPDATE environment (backup first!):
   - Set new key as KEYSHARE_ENCRYPTION_KEY
   - Move current key to KEYSHARE_ENCRYPTION_KEY_OLD

3. MIGRATE data (dry-run first):
   python -m custody.core.keyshares.rotation --rotate-keys --dry-run
   python -m custody.core.keyshares.rotation --rotate-keys

4. VERIFY all data uses new key:
   python -m custody.core.keyshares.rotation --verify

5. REMOVE old key from KEYSHARE_ENCRYPTION_KEY_OLD
   (only after verification passes!)
"""
    )
    parser.add_argument('--generate-key', action='store_true',
                        help='Generate a new encryption key')
    parser.add_argument('--rotate-keys', action='store_true',
                        help='Re-encrypt all key shares and mappings with the primary key')
    parser.add_argument('--verify', action='store_true',
                        help='Verify ALL data can be decrypted with the PRIMARY key only')
    parser.add_argument('--check-status', action='store_true',
                        help='Check encryption key configuration')
    parser.add_argument('--dry-run', action='store_true',
                        help='For --rotate-keys: show what would be done without making changes')
    parser.add_argument('--batch-size', type=int, default=None,
                        help='Number of records to process per batch (default: ROTATION_BATCH_SIZE or 100)')

    args = parser.parse_args(argv)

    if args.generate_key:
        print(generate_encryption_key())
        return 0

    if not (args.check_status or args.rotate_keys or args.verify):
        parser.print_help()
        return 0

    from custody.core.config import get_settings
    from custody.core.database import get_db, init_db

    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=settings.log_format)
    cipher = ShareCipher.from_settings(settings)
    batch_size = args.batch_size or settings.rotation_batch_size

    if args.check_status:
        print("=" * 60)
        print("ENCRYPTION STATUS")
        print("=" * 60)
        print("Primary key loaded: True")
        print(f"Old keys loaded: {cipher.key_count - 1}")
        print(f"Total keys: {cipher.key_count}")
        if cipher.has_old_keys:
            print("\nOld keys are configured: run --rotate-keys, then --verify before removing them.")
        return 0

    init_db(settings)
    db = next(get_db())
    try:
        return _run_admin_command(db, cipher, args, batch_size)
    finally:
        db.close()


def _run_admin_command(db: Session, cipher: ShareCipher, args, batch_size: int) -> int:
    if args.rotate_keys:
        if not cipher.has_old_keys:
            print("No old keys configured in KEYSHARE_ENCRYPTION_KEY_OLD - nothing to rotate.")
            return 1
        report = rotate_keys(db, cipher, batch_size=batch_size, dry_run=args.dry_run)
        print(f"ROTATION {'SIMULATION ' if report.dry_run else ''}COMPLETE")
        print(f"Rotated: {report.rotated}, Skipped: {report.skipped}, "
              f"Concurrent: {report.concurrent}, Errors: {report.errors}")
        for sample in report.samples:
            print(f"  failed: {sample}")
        return 0 if report.errors == 0 else 1

    report = verify_primary_key(db, cipher, batch_size=batch_size)
    print(f"Checked: {report.checked}, Need rotation: {report.needs_rotation}, Errors: {report.errors}")
    for sample in report.samples[:5]:
        print(f"  - {sample}")
    if report.ok:
        print("VERIFICATION PASSED - old keys can be removed from KEYSHARE_ENCRYPTION_KEY_OLD.")
        return 0
    print("VERIFICATION FAILED")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
