#!/usr/bin/env python3
"""
Clean up Couchbase collections for fresh adaptive runs.

Deletes all documents from:
- runs (run configuration and status)
- generation_stats (per-generation statistics)
- results (population snapshots)

Usage:
    python scripts/cleanup_collections.py            # asks for confirmation
    python scripts/cleanup_collections.py --run sphere-1 --yes
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from adaptive_ga.couchbase_client import CouchbaseClient


COLLECTIONS = ["runs", "generation_stats", "results"]


def _where(run_id):
    return f" WHERE run_id = '{run_id}'" if run_id else ""


def count_documents(cb: CouchbaseClient, collection_name: str, run_id=None) -> int:
    """Count documents in a collection (optionally only those of one run)."""
    rows = cb.query(f"SELECT COUNT(*) AS count FROM {collection_name}{_where(run_id)}")
    return rows[0].get("count", 0) if rows else 0


def delete_documents(cb: CouchbaseClient, collection_name: str, run_id=None) -> int:
    """Delete documents from a collection. Returns count deleted."""
    count_before = count_documents(cb, collection_name, run_id)
    if count_before == 0:
        return 0

    print(f"    Deleting from {collection_name} ({count_before} docs)...", end=" ", flush=True)
    cb.query(f"DELETE FROM {collection_name}{_where(run_id)}")

    actual_deleted = count_before - count_documents(cb, collection_name, run_id)
    print(f"✓ {actual_deleted} deleted")

    if actual_deleted != count_before:
        print(f"    WARNING: Expected to delete {count_before}, actually deleted {actual_deleted}")

    return actual_deleted


def main():
    parser = argparse.ArgumentParser(description="Delete stored adaptive evolution runs")
    parser.add_argument("--run", metavar="RUN_ID", default=None,
                        help="Only delete documents of this run (default: everything)")
    parser.add_argument("--yes", action="store_true",
                        help="Skip the confirmation prompt")
    args = parser.parse_args()

    if args.run and "'" in args.run:
        print(f"✗ Invalid run id: {args.run}")
        sys.exit(1)

    print("=" * 70)
    print("COUCHBASE COLLECTION CLEANUP")
    print("=" * 70)
    print()
    target = f"documents of run '{args.run}'" if args.run else "ALL DOCUMENTS"
    print(f"This will DELETE {target} from the following collections:")
    for coll in COLLECTIONS:
        print(f"  - {coll}")
    print()

    with CouchbaseClient() as cb:
        print("Current document counts:")
        print("-" * 40)
        for coll in COLLECTIONS:
            print(f"  {coll:20} {count_documents(cb, coll, args.run):>6} documents")
        print()

        if not args.yes:
            response = input("Proceed with deletion? (type 'yes' to confirm): ").strip().lower()
            if response != "yes":
                print(f"\n✗ Cancelled (you typed '{response}'). No data was deleted.")
                return

        print()
        print("Deleting documents...")
        print("-" * 40)

        total_deleted = 0
        for coll in COLLECTIONS:
            deleted = delete_documents(cb, coll, args.run)
            print(f"  {coll:20} {deleted:>6} deleted")
            total_deleted += deleted

        print()
        print("=" * 70)
        print(f"COMPLETE: {total_deleted} total documents deleted")
        print("=" * 70)


if __name__ == "__main__":
    main()
