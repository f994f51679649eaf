"""
waflens - WAF log ingestion and rollup analytics

Ingests security-log exports (JSON array or NDJSON) from several vendor
field-naming conventions and keeps:
- A deduplicated canonical event table
- Per-file upload statistics with checksum-based dedup
- Incrementally maintained rollup tables for dashboard queries

Architecture: Normalizer -> Parser -> Batched upsert -> Rollup projector
"""

__version__ = "0.1.0"
