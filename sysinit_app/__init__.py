"""System initialization service: dependency-aware master-data importer."""
