"""Blob retention, storage optimization and retention policy."""
