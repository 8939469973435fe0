"""Catalog and persistence interfaces."""
