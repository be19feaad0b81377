"""HTTP API for the orchestrator."""
