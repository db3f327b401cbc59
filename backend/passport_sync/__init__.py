"""Patient passport observation sync service."""
