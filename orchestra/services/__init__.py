"""Services for the orchestration pipeline (storage, status, queue, upstream clients)."""
