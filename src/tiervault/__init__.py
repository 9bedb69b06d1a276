"""Tiered organizational document sharing."""
