"""Prometheus metrics and run statistics."""
