"""Shared helpers (environment, logging)."""
