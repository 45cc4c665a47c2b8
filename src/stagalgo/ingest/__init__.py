"""Ingestion cleaning layer between raw feeds and the store."""
