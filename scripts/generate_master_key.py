#!/usr/bin/env python3
"""
Generate a local master key file for the local KMS provider.

Writes 96 random bytes with owner-only permissions. Point MASTER_KEY_FILE
at the result.

Usage:
    python scripts/generate_master_key.py
    python scripts/generate_master_key.py --path keys/master-key.txt
    python scripts/generate_master_key.py --force  # Replace an existing key
"""
import argparse
import sys

from fieldvault.services.master_key import LOCAL_MASTER_KEY_LENGTH, write_local_master_key


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate a local CSFLE master key file")
    parser.add_argument("--path", default="master-key.txt", help="Destination file")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing key (existing data keys become unreadable)",
    )
    args = parser.parse_args()

    try:
        path = write_local_master_key(args.path, overwrite=args.force)
    except FileExistsError as e:
        print(f"❌ {e} (use --force to replace it)")
        return 1

    print(f"✅ Wrote {LOCAL_MASTER_KEY_LENGTH}-byte master key to {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
