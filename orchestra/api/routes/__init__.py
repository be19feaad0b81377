"""API route modules."""
from __future__ import annotations

from orchestra.api.routes import artifacts, health, orchestrations, status

__all__ = ["artifacts", "health", "orchestrations", "status"]
