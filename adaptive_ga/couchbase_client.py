"""
Couchbase connection wrapper for adaptive evolution run storage.

This module provides a clean interface to the Couchbase database that stores:
- runs: One document per adaptive run (configuration, status, final fitness)
- generation_stats: Statistical summary per generation, including which
  engine configuration produced it and the variance signal
- results: Optional full population snapshots (EvolutionResult.to_dict())

Used by: experiment.py, scripts/run_adaptive_evolution.py,
         scripts/setup_couchbase.py, scripts/cleanup_collections.py
"""

import os
from typing import List, Dict, Any
from datetime import timedelta

from couchbase.auth import PasswordAuthenticator
from couchbase.cluster import Cluster
from couchbase.options import ClusterOptions
from dotenv import load_dotenv


# Load environment variables
load_dotenv()


class CouchbaseClient:
    """
    Manages connection to Couchbase cluster and provides collection access.

    Thin wrapper around the Couchbase Python SDK handling connection setup,
    collection handles, document get/upsert, scope queries and cleanup.

    Example:
        with CouchbaseClient() as cb:
            cb.save_document("runs", "sphere-1", run_doc)
            run_doc = cb.get_document("runs", "sphere-1")
    """

    def __init__(self):
        """
        Initialize Couchbase client with environment variable configuration.

        Required environment variables:
        - COUCHBASE_CONNECTION_STRING
        - COUCHBASE_USERNAME
        - COUCHBASE_PASSWORD
        - COUCHBASE_BUCKET (default: "adaptive")
        - COUCHBASE_SCOPE (default: "ga_scope")
        """
        self.connection_string = os.getenv("COUCHBASE_CONNECTION_STRING")
        self.username = os.getenv("COUCHBASE_USERNAME")
        self.password = os.getenv("COUCHBASE_PASSWORD")
        self.bucket_name = os.getenv("COUCHBASE_BUCKET", "adaptive")
        self.scope_name = os.getenv("COUCHBASE_SCOPE", "ga_scope")

        if not all([self.connection_string, self.username, self.password]):
            raise ValueError(
                "Missing required Couchbase credentials in .env file. "
                "Required: COUCHBASE_CONNECTION_STRING, COUCHBASE_USERNAME, COUCHBASE_PASSWORD"
            )

        self.cluster = None
        self.bucket = None
        self.scope = None

    def connect(self):
        """
        Establish connection to Couchbase cluster and bucket.

        Raises:
            Exception: If connection fails (fail loud, no fallback)
        """
        try:
            auth = PasswordAuthenticator(self.username, self.password)
            self.cluster = Cluster(self.connection_string, ClusterOptions(auth))
            self.cluster.wait_until_ready(timedelta(seconds=10))

            self.bucket = self.cluster.bucket(self.bucket_name)
            self.scope = self.bucket.scope(self.scope_name)

            print(f"✓ Connected to Couchbase: {self.bucket_name}/{self.scope_name}")

        except Exception as e:
            raise Exception(f"Failed to connect to Couchbase: {str(e)}") from e

    def get_collection(self, collection_name: str):
        """
        Get handle to a specific collection.

        Raises:
            Exception: If not connected or collection doesn't exist
        """
        if not self.scope:
            raise Exception("Not connected to Couchbase. Call connect() first.")

        try:
            return self.scope.collection(collection_name)
        except Exception as e:
            raise Exception(f"Failed to get collection '{collection_name}': {str(e)}") from e

    def get_document(self, collection_name: str, document_id: str) -> Dict[str, Any]:
        """
        Retrieve a document from a collection.

        Raises:
            Exception: If document not found or retrieval fails
        """
        try:
            collection = self.get_collection(collection_name)
            result = collection.get(document_id)
            return result.content_as[dict]
        except Exception as e:
            raise Exception(
                f"Failed to get document '{document_id}' from '{collection_name}': {str(e)}"
            ) from e

    def save_document(self, collection_name: str, document_id: str, content: Dict[str, Any]):
        """
        Save (upsert) a document to a collection.

        Raises:
            Exception: If save fails
        """
        try:
            collection = self.get_collection(collection_name)
            collection.upsert(document_id, content)
        except Exception as e:
            raise Exception(
                f"Failed to save document '{document_id}' to '{collection_name}': {str(e)}"
            ) from e

    def query(self, statement: str) -> List[Dict[str, Any]]:
        """
        Run a SQL++ statement in the scope context and return all rows.

        Rows are consumed eagerly; DELETE statements only execute once the
        result is iterated.
        """
        if not self.scope:
            raise Exception("Not connected to Couchbase. Call connect() first.")

        try:
            return list(self.scope.query(statement).rows())
        except Exception as e:
            raise Exception(f"Query failed: {statement[:120]}: {str(e)}") from e

    def close(self):
        """Close cluster connection."""
        if self.cluster:
            self.cluster.close()
            print("✓ Couchbase connection closed")

    def __enter__(self):
        """Context manager entry - connect automatically."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - cleanup connection."""
        self.close()
