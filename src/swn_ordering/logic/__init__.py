"""Order processing business logic."""
