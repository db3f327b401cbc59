"""Services for the passport sync backend."""
