"""Pluggable file storage for research data repositories.

This package provides:
- A registry of storage drivers (local filesystem and S3-compatible stores)
- Per-collection and per-dataset driver bindings with inheritance
- Direct and multipart upload via presigned URLs
- Reconciliation of uploaded objects before file metadata is committed
"""

__all__ = ["api", "client", "core", "ingest", "upload"]
