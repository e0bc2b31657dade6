#!/usr/bin/env python3
"""
wikisign Management CLI

Commands for managing the signature store:
- init-schema: Create the signature table (install time, idempotent)
- history: Print a page's signature history
- invalidate: Invalidate a page's valid signatures
- hash-text: Print the content hash of a text file

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-schema
    python -m tools.manage history --page-id 10
    python -m tools.manage invalidate --page-id 10
    python -m tools.manage hash-text page.wiki
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_init_schema(args):
    """Create the signature table if it does not exist."""
    import psycopg2
    from wikisign.db.config import get_database_config
    from wikisign.db.schema import ensure_schema

    config = get_database_config()
    if config is None:
        print("ERROR: No database configured. Set DATABASE_URL or DATABASE_HOST.")
        sys.exit(1)

    print(f"Connecting to {config.to_url(include_password=False)}...")
    conn = psycopg2.connect(config.to_dsn())
    try:
        created = ensure_schema(conn)
    finally:
        conn.close()

    if created:
        print("Signature table created.")
    else:
        print("Signature table already exists. Nothing to do.")


def cmd_history(args):
    """Print every signature recorded for a page."""
    from wikisign.services import create_signature_store

    store = create_signature_store()
    records = store.list_history(args.page_id)

    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    if not records:
        print(f"No signatures recorded for page {args.page_id}.")
        return

    print(f"Signature history for page {args.page_id}:")
    for record in records:
        status = "VALID  " if record.is_valid else "invalid"
        print(
            f"  [{status}] rev {record.revision_id} by user {record.signer_id} "
            f"at {record.timestamp.isoformat()} hash {record.content_hash}"
        )
        if record.remarks:
            print(f"            remarks: {record.remarks}")


def cmd_invalidate(args):
    """Invalidate a page's valid signatures (as a content change would)."""
    from wikisign.services import create_signature_store

    store = create_signature_store()
    affected = store.invalidate_all_valid(args.page_id)
    print(f"Invalidated {affected} signature(s) for page {args.page_id}.")


def cmd_hash_text(args):
    """Print the content hash a signature over this text would carry."""
    from wikisign.core import ContentHasher

    # newline="" keeps line endings byte-exact
    with open(args.file, encoding="utf-8", newline="") as f:
        text = f.read()
    print(ContentHasher.digest_text(text))


def main():
    parser = argparse.ArgumentParser(
        description="wikisign Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-schema", help="Create the signature table")

    history_parser = subparsers.add_parser("history", help="Show a page's signature history")
    history_parser.add_argument("--page-id", type=int, required=True, help="Page ID")
    history_parser.add_argument("--json", action="store_true", help="Output JSON")

    invalidate_parser = subparsers.add_parser("invalidate", help="Invalidate a page's signatures")
    invalidate_parser.add_argument("--page-id", type=int, required=True, help="Page ID")

    hash_parser = subparsers.add_parser("hash-text", help="Hash a text file")
    hash_parser.add_argument("file", help="Path to the text file")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {
        "init-schema": cmd_init_schema,
        "history": cmd_history,
        "invalidate": cmd_invalidate,
        "hash-text": cmd_hash_text,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
