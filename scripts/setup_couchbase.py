#!/usr/bin/env python3
"""
Couchbase Database Setup Script

Prepares the storage used by `run_adaptive_evolution.py --store`:

    <COUCHBASE_BUCKET> / <COUCHBASE_SCOPE> / runs               one document per run
                                           / generation_stats   one document per generation
                                           / results            optional population snapshots

Each collection also gets a primary index so cleanup_collections.py can count
and delete documents with SQL++.

Usage:
    python scripts/setup_couchbase.py              # create whatever is missing
    python scripts/setup_couchbase.py --verify     # report only
    python scripts/setup_couchbase.py --dry-run    # show the plan
    python scripts/setup_couchbase.py --force      # drop and recreate (destroys data)
"""

import argparse
import os
import sys
import time
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from couchbase.exceptions import (
    BucketAlreadyExistsException,
    BucketNotFoundException,
    CollectionAlreadyExistsException,
    ScopeAlreadyExistsException
)
from couchbase.management.buckets import BucketSettings, BucketType, StorageBackend
from couchbase.management.collections import CollectionSpec
from adaptive_ga.couchbase_client import CouchbaseClient


BUCKET_NAME = os.getenv("COUCHBASE_BUCKET", "adaptive")
SCOPE_NAME = os.getenv("COUCHBASE_SCOPE", "ga_scope")
COLLECTIONS = ["runs", "generation_stats", "results"]
BUCKET_RAM_MB = 256


def existing_layout(cb: CouchbaseClient):
    """
    Inspect the cluster.

    Returns:
        (bucket_exists, scope_exists, set of existing collection names)
    """
    try:
        cb.cluster.buckets().get_bucket(BUCKET_NAME)
    except BucketNotFoundException:
        return False, False, set()

    for scope in cb.cluster.bucket(BUCKET_NAME).collections().get_all_scopes():
        if scope.name == SCOPE_NAME:
            return True, True, {c.name for c in scope.collections}
    return True, False, set()


def ensure_bucket(cb: CouchbaseClient, exists: bool, force: bool) -> str:
    buckets = cb.cluster.buckets()
    if exists and not force:
        return "skipped"
    if exists:
        buckets.drop_bucket(BUCKET_NAME)
        time.sleep(2)

    try:
        buckets.create_bucket(BucketSettings(
            name=BUCKET_NAME,
            bucket_type=BucketType.COUCHBASE,
            ram_quota_mb=BUCKET_RAM_MB,
            num_replicas=0,
            storage_backend=StorageBackend.COUCHSTORE
        ))
    except BucketAlreadyExistsException:
        return "skipped"

    # Bucket creation is asynchronous on the server
    time.sleep(3)
    return "created"


def ensure_scope(cb: CouchbaseClient, exists: bool, force: bool) -> str:
    manager = cb.cluster.bucket(BUCKET_NAME).collections()
    if exists and not force:
        return "skipped"
    if exists:
        manager.drop_scope(SCOPE_NAME)
        time.sleep(1)

    try:
        manager.create_scope(SCOPE_NAME)
    except ScopeAlreadyExistsException:
        return "skipped"
    return "created"


def ensure_collection(cb: CouchbaseClient, name: str, exists: bool) -> str:
    if exists:
        return "skipped"
    try:
        cb.cluster.bucket(BUCKET_NAME).collections().create_collection(
            CollectionSpec(name, scope_name=SCOPE_NAME)
        )
    except CollectionAlreadyExistsException:
        return "skipped"
    return "created"


def ensure_primary_index(cb: CouchbaseClient, name: str) -> str:
    cb.query(f"CREATE PRIMARY INDEX IF NOT EXISTS ON `{name}`")
    return "ensured"


def print_layout(bucket_ok, scope_ok, collections):
    def mark(ok):
        return "✓" if ok else "✗"

    print(f"  {mark(bucket_ok)} Bucket '{BUCKET_NAME}'")
    print(f"  {mark(scope_ok)} Scope '{SCOPE_NAME}'")
    for name in COLLECTIONS:
        print(f"  {mark(name in collections)} Collection '{SCOPE_NAME}.{name}'")


def main():
    parser = argparse.ArgumentParser(
        description="Create the Couchbase bucket, scope and collections for adaptive evolution runs"
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--verify", action="store_true",
                      help="Only report which resources exist")
    mode.add_argument("--dry-run", action="store_true",
                      help="Show what would be created without changing anything")
    mode.add_argument("--force", action="store_true",
                      help="Drop and recreate bucket and scope (WARNING: destroys existing data)")
    args = parser.parse_args()

    missing = [var for var in ("COUCHBASE_CONNECTION_STRING", "COUCHBASE_USERNAME", "COUCHBASE_PASSWORD")
               if not os.getenv(var)]
    if missing:
        print(f"✗ Missing environment variables: {', '.join(missing)}", file=sys.stderr)
        print("  Copy .env.example to .env and fill in the connection details.", file=sys.stderr)
        sys.exit(1)

    if args.force:
        response = input(f"Drop and recreate '{BUCKET_NAME}'? All stored runs are lost. (type 'yes'): ")
        if response.strip().lower() != "yes":
            print("Aborted.")
            return

    try:
        with CouchbaseClient() as cb:
            bucket_ok, scope_ok, collections = existing_layout(cb)

            if args.verify:
                print("\nVerification:")
                print_layout(bucket_ok, scope_ok, collections)
                complete = bucket_ok and scope_ok and set(COLLECTIONS) <= collections
                sys.exit(0 if complete else 1)

            if args.dry_run:
                print("\nDry-run mode - no changes will be made")
                print(f"  {'keep' if bucket_ok else 'create'}: bucket '{BUCKET_NAME}'")
                print(f"  {'keep' if scope_ok else 'create'}: scope '{SCOPE_NAME}'")
                for name in COLLECTIONS:
                    print(f"  {'keep' if name in collections else 'create'}: collection '{name}' + primary index")
                return

            operations = [("bucket", ensure_bucket(cb, bucket_ok, args.force))]
            operations.append(("scope", ensure_scope(cb, scope_ok, args.force)))

            # Recreated scopes start without collections
            if args.force:
                collections = set()

            for name in COLLECTIONS:
                operations.append((f"collection:{name}", ensure_collection(cb, name, name in collections)))

            # The client opened its scope handle before the scope existed
            cb.bucket = cb.cluster.bucket(BUCKET_NAME)
            cb.scope = cb.bucket.scope(SCOPE_NAME)
            for name in COLLECTIONS:
                operations.append((f"index:{name}", ensure_primary_index(cb, name)))

            bucket_ok, scope_ok, collections = existing_layout(cb)

    except Exception as e:
        print(f"\n✗ Database setup failed: {e}", file=sys.stderr)
        sys.exit(1)

    created = sum(1 for _, status in operations if status == "created")
    skipped = sum(1 for _, status in operations if status == "skipped")

    print("\n✓ Database setup successful\n")
    for resource, status in operations:
        print(f"  {resource:28} {status}")
    print(f"\nCreated {created}, skipped {skipped} existing resources")
    print_layout(bucket_ok, scope_ok, collections)


if __name__ == "__main__":
    main()
