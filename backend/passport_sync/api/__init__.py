from passport_sync.api import health, records, sync

__all__ = ["health", "records", "sync"]
