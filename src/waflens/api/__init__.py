"""HTTP API exposing upload, reindex and rollup views."""
