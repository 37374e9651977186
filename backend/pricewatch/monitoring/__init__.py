"""Prometheus metrics, application state and the health server."""
