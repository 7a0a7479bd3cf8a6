"""Packaged JSON schemas for taskloop documents."""
