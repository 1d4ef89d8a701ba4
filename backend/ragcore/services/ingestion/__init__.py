"""Ingestion pipeline and its in-process worker pool."""
