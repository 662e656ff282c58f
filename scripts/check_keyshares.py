#!/usr/bin/env python3
"""
Key-Share Health Check

Reports, per profile, whether a key share and key mapping exist and whether
the share decrypts with the configured keys. Never prints share material
or key ids.

Usage:
    python3 scripts/check_keyshares.py profile-1 profile-2
"""
import sys
import os
import argparse
import asyncio
import logging

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()


async def check(owner_ids) -> int:
    from custody.core.config import get_settings
    from custody.core.database import init_db, get_session_factory
    from custody.core.database.connection import dispose_engines
    from custody.core.keyshares.errors import KeyShareError
    from custody.core.keyshares.mappings import KeyMappingStore
    from custody.core.keyshares.store import KeyShareStore

    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=settings.log_format)
    init_db(settings)
    store = KeyShareStore.from_settings(get_session_factory(), settings)
    mappings = KeyMappingStore.from_settings(get_session_factory(), settings)

    failures = 0
    try:
        for owner_id in owner_ids:
            print(f"Profile: {owner_id}")
            try:
                share = await store.get(owner_id)
                print(f"  Key share: {'present, decrypts OK' if share is not None else 'missing'}")
            except KeyShareError as e:
                failures += 1
                print(f"  Key share: FAILED ({type(e).__name__}: {e})")

            try:
                mapping = await mappings.get(owner_id)
                if mapping is None:
                    print("  Key mapping: missing")
                else:
                    print(f"  Key mapping: present ({mapping.key_algorithm}, public key {mapping.public_key[:10]}...)")
            except KeyShareError as e:
                failures += 1
                print(f"  Key mapping: FAILED ({type(e).__name__}: {e})")
    finally:
        await dispose_engines()

    return 1 if failures else 0


def main():
    parser = argparse.ArgumentParser(description="Check key-share custody state for profiles")
    parser.add_argument("owner_ids", nargs="+", help="Profile ids to check")
    args = parser.parse_args()
    sys.exit(asyncio.run(check(args.owner_ids)))


if __name__ == "__main__":
    main()
