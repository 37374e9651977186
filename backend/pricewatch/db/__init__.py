"""Database collaborator: engine construction and health monitor."""

from pricewatch.db.session import DatabaseMonitor, build_engine

__all__ = ["DatabaseMonitor", "build_engine"]
