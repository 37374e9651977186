"""HTTP surface: health, readiness, liveness and metrics routes."""
