"""Catalog storage and usage counter stores."""
