"""Shared helpers: importer feature flags and logging setup."""
