"""Shared handler utilities: observability and the error taxonomy."""
