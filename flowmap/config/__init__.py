"""Mapping document loading and validation."""
