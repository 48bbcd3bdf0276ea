"""Lambda handlers and their shared utilities."""
