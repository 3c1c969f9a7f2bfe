"""Coordinator components: errors, logging, events, retry, health and metrics."""
