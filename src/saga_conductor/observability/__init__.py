"""Observability – structured logging, metrics ports, health checks."""
